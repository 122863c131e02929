"""Tests for the stats provider client.

Covers query encoding, page parsing, and the retry policy (transient
failures retried, other 4xx raised immediately).
"""
import httpx
import pytest

from statsync.core.exceptions import ProviderError, TransientProviderError
from statsync.services.core.provider_client import build_query, clamp_per_page, parse_page


class TestQueryEncoding:

    def test_list_filters_use_bracket_names(self):
        query = build_query({"seasons": [2024, 2025], "week": 3}, "abc", 50)

        assert query == [
            ("per_page", "50"),
            ("seasons[]", "2024"),
            ("seasons[]", "2025"),
            ("week", "3"),
            ("cursor", "abc"),
        ]

    def test_none_filters_and_empty_cursor_dropped(self):
        query = build_query({"week": None, "postseason": False}, "", 100)

        assert query == [("per_page", "100"), ("postseason", "false")]

    @pytest.mark.parametrize("value,expected", [(0, 1), (-5, 1), (25, 25), (500, 100), ("x", 100)])
    def test_per_page_clamped(self, value, expected):
        assert clamp_per_page(value) == expected


class TestPageParsing:

    def test_next_cursor(self):
        page = parse_page({"data": [{"id": 1}, {"id": 2}], "meta": {"next_cursor": 77}})

        assert [i["id"] for i in page.items] == [1, 2]
        assert page.next_cursor == "77"

    def test_camel_case_cursor(self):
        assert parse_page({"data": [{"id": 1}], "meta": {"nextCursor": "n2"}}).next_cursor == "n2"

    def test_missing_meta_is_end_of_stream(self):
        page = parse_page({"data": [{"id": 1}]})

        assert page.next_cursor is None

    def test_bare_list_payload(self):
        page = parse_page([{"id": 1}, "junk"])

        assert page.items == [{"id": 1}]
        assert page.next_cursor is None

    def test_unexpected_payload(self):
        with pytest.raises(ProviderError):
            parse_page("not json object")


class TestProviderRequests:

    @pytest.mark.asyncio
    async def test_sends_auth_and_paging_params(self, provider, provider_client):
        provider.serve("games", [{"id": 1}])

        page = await provider_client.list_games(seasons=[2024], week=2)

        assert page.items == [{"id": 1}]
        request = provider.requests[0]
        assert request.headers["Authorization"] == "test-key"
        assert request.url.params.get_list("seasons[]") == ["2024"]
        assert request.url.params["per_page"] == "100"

    @pytest.mark.asyncio
    async def test_advanced_path(self, provider, provider_client):
        provider.serve("advanced_stats/rushing", [{"player": {"id": 5}}])

        page = await provider_client.list_advanced("rushing", season=2024)

        assert len(page.items) == 1
        with pytest.raises(ValueError):
            await provider_client.list_advanced("kicking")

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, provider, provider_client):
        """Should retry a 500 and return the next successful page."""
        provider.fail("teams", 500)
        provider.serve("teams", [{"id": 1}])

        page = await provider_client.list_teams()

        assert page.items == [{"id": 1}]
        assert len(provider.requests_for("teams")) == 2

    @pytest.mark.asyncio
    async def test_transient_error_exhausts_retries(self, provider, provider_client):
        provider.fail("teams", 503, 503, 503, 503)

        with pytest.raises(TransientProviderError) as exc_info:
            await provider_client.list_teams()

        assert exc_info.value.status_code == 503
        assert len(provider.requests_for("teams")) == 3

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, provider, provider_client):
        provider.fail("teams", 404)

        with pytest.raises(ProviderError) as exc_info:
            await provider_client.list_teams()

        assert not isinstance(exc_info.value, TransientProviderError)
        assert exc_info.value.status_code == 404
        assert len(provider.requests_for("teams")) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self, provider):
        provider.handlers["teams"] = lambda request: httpx.Response(429, headers={"Retry-After": "7"})
        client = provider.client(max_retries=1)

        with pytest.raises(TransientProviderError) as exc_info:
            await client.list_teams()
        await client.close()

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, provider):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider.handlers["teams"] = refuse
        client = provider.client(max_retries=2)

        with pytest.raises(TransientProviderError):
            await client.list_teams()
        await client.close()

        assert len(provider.requests_for("teams")) == 2
