"""
T-ALL Report - External API Client Tests

All HTTP traffic goes through fake sessions; nothing touches the network.
"""
import json
from types import SimpleNamespace

import pandas as pd
import pytest
import requests

from tall_report.external_apis import EnrichrClient, GEOClient
from tall_report.external_apis import base_client


class FakeResponse:
    def __init__(self, status_code=200, payload=None, chunks=None, headers=None):
        self.status_code = status_code
        self.text = json.dumps(payload) if payload is not None else ""
        self._chunks = chunks or []
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=1):
        yield from self._chunks

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Records calls and answers from a queue of responses."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(base_client.time, "sleep", lambda seconds: None)


class TestEnrichrClient:
    """Gene list upload and shareable links."""

    def test_add_list(self):
        session = FakeSession([FakeResponse(payload={"shortId": "abc123", "userListId": 42})])
        client = EnrichrClient(enable_cache=False, session=session)

        response = client.add_list(["HES1", " DTX1 ", ""], description="up genes")

        assert response.success
        assert response.data["shortId"] == "abc123"
        method, url, kwargs = session.calls[0]
        assert method == "POST"
        assert url.endswith("/addList")
        assert kwargs["files"]["list"] == (None, "HES1\nDTX1")
        assert kwargs["files"]["description"] == (None, "up genes")

    def test_share_link(self):
        session = FakeSession([FakeResponse(payload={"shortId": "abc123", "userListId": 42})])
        with EnrichrClient(enable_cache=False, session=session) as client:
            link = client.create_share_link(["HES1", "HES4"])
            assert link == f"{client.BASE_URL}/enrich?dataset=abc123"
        assert session.closed

    def test_empty_list_rejected(self):
        client = EnrichrClient(enable_cache=False, session=FakeSession([]))
        with pytest.raises(ValueError):
            client.add_list(["", "  "])

    def test_missing_short_id(self):
        session = FakeSession([FakeResponse(payload={"error": "bad list"})])
        client = EnrichrClient(enable_cache=False, session=session)

        response = client.add_list(["HES1"])

        assert not response.success
        assert "shortId" in response.error

    def test_client_error_returns_none(self):
        session = FakeSession([FakeResponse(status_code=400)])
        client = EnrichrClient(enable_cache=False, session=session)
        assert client.create_share_link(["HES1"]) is None
        assert len(session.calls) == 1

    def test_retries_server_errors(self):
        session = FakeSession([
            FakeResponse(status_code=503),
            requests.ConnectionError("reset"),
            FakeResponse(payload={"shortId": "xyz", "userListId": 1}),
        ])
        client = EnrichrClient(enable_cache=False, session=session)

        assert client.create_share_link(["HES1"]).endswith("dataset=xyz")
        assert len(session.calls) == 3

    def test_gives_up_after_max_retries(self):
        session = FakeSession([FakeResponse(status_code=500)] * EnrichrClient.MAX_RETRIES)
        client = EnrichrClient(enable_cache=False, session=session)

        response = client.add_list(["HES1"])

        assert not response.success
        assert len(session.calls) == EnrichrClient.MAX_RETRIES

    def test_view_list(self):
        payload = {"genes": ["HES1", "DTX1"], "description": "up genes"}
        session = FakeSession([FakeResponse(payload=payload)])
        client = EnrichrClient(enable_cache=False, session=session)

        response = client.view_list(42)

        assert response.data == payload
        method, url, kwargs = session.calls[0]
        assert method == "GET"
        assert url.endswith("/view")
        assert kwargs["params"] == {"userListId": 42}


class TestCaching:
    """GET responses are cached on disk."""

    def test_cached_get(self, temp_dir):
        session = FakeSession([FakeResponse(payload={"value": 1})])
        client = EnrichrClient(enable_cache=True, cache_dir=temp_dir, session=session)

        first = client.get("datasetStatistics", params={"a": 1})
        second = client.get("datasetStatistics", params={"a": 1})

        assert first.data == second.data == {"value": 1}
        assert not first.cached
        assert second.cached
        assert len(session.calls) == 1

    def test_expired_entry_removed_and_refetched(self, temp_dir, monkeypatch):
        clock = {"now": 1_000_000.0}
        monkeypatch.setattr(base_client.time, "time", lambda: clock["now"])
        session = FakeSession([FakeResponse(payload={"value": 1}), FakeResponse(payload={"value": 2})])
        client = EnrichrClient(enable_cache=True, cache_ttl=60, cache_dir=temp_dir, session=session)

        client.get("datasetStatistics")
        cache_files = list(temp_dir.glob("Enrichr*.json"))
        assert len(cache_files) == 1

        clock["now"] += 30
        assert client.get("datasetStatistics").cached

        clock["now"] += 31
        assert client._read_cache(client._get_cache_key("datasetStatistics", {})) is None
        assert not cache_files[0].exists()

        refreshed = client.get("datasetStatistics")
        assert refreshed.data == {"value": 2}
        assert not refreshed.cached
        assert len(session.calls) == 2


class TestRateLimit:
    """Consecutive requests are spaced by RATE_LIMIT_DELAY."""

    def test_sleeps_for_remaining_delay(self, monkeypatch):
        clock = {"now": 500.0}
        sleeps = []
        monkeypatch.setattr(base_client.time, "time", lambda: clock["now"])
        monkeypatch.setattr(base_client.time, "sleep", sleeps.append)
        client = EnrichrClient(enable_cache=False, session=FakeSession([]))

        client._rate_limit()
        assert sleeps == []

        clock["now"] += 0.25
        client._rate_limit()
        assert sleeps == [pytest.approx(client.RATE_LIMIT_DELAY - 0.25)]

        clock["now"] += client.RATE_LIMIT_DELAY + 0.1
        client._rate_limit()
        assert len(sleeps) == 1


class TestGEOClient:
    """Archive download and sample annotations."""

    def test_download_url(self):
        client = GEOClient(session=FakeSession([]))
        assert client.download_url("GSE1234") == f"{client.BASE_URL}/?acc=GSE1234&format=file"
        assert client.download_url("GSE1234", "GSE1234_counts.txt.gz").endswith(
            "acc=GSE1234&format=file&file=GSE1234_counts.txt.gz"
        )

    def test_download_streams_to_file(self, temp_dir):
        session = FakeSession([
            FakeResponse(chunks=[b"abc", b"def"], headers={"content-length": "6"})
        ])
        client = GEOClient(session=session)

        path = client.download("GSE1234", temp_dir)

        assert path == temp_dir / "GSE1234_RAW.tar"
        assert path.read_bytes() == b"abcdef"
        assert not (temp_dir / "GSE1234_RAW.tar.part").exists()
        assert session.calls[0][2]["stream"] is True

        # Second call reuses the file
        assert client.download("GSE1234", temp_dir) == path
        assert len(session.calls) == 1

    def test_download_http_error(self, temp_dir):
        client = GEOClient(session=FakeSession([FakeResponse(status_code=404)]))
        with pytest.raises(requests.HTTPError):
            client.download("GSE0000", temp_dir)
        assert not (temp_dir / "GSE0000_RAW.tar").exists()

    def test_fetch_sample_annotations(self, temp_dir, monkeypatch):
        import GEOparse

        gsms = {
            "GSM1": SimpleNamespace(metadata={
                "title": ["CUTLL1 GSI rep1"],
                "source_name_ch1": ["CUTLL1"],
                "characteristics_ch1": ["cell line: CUTLL1", "Treatment: GSI"],
            }),
            "GSM2": SimpleNamespace(metadata={
                "title": ["CUTLL1 DMSO rep1"],
                "characteristics_ch1": ["cell line: CUTLL1", "Treatment: DMSO"],
            }),
        }
        captured = {}

        def fake_get_geo(geo, destdir, silent):
            captured.update(geo=geo, destdir=destdir)
            return SimpleNamespace(gsms=gsms)

        monkeypatch.setattr(GEOparse, "get_GEO", fake_get_geo)

        annotations = GEOClient(session=FakeSession([])).fetch_sample_annotations("GSE1234", temp_dir)

        assert captured["geo"] == "GSE1234"
        assert isinstance(annotations, pd.DataFrame)
        assert list(annotations["sample_id"]) == ["GSM1", "GSM2"]
        assert list(annotations["treatment"]) == ["GSI", "DMSO"]
        assert annotations.loc[1, "source_name"] == ""
