"""Change notifications: detection, alerts, webhook delivery."""
