"""Provider API client."""
