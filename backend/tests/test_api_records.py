"""
Tests for the record detail endpoints (app.routers.records).

Covers:
  • GET /api/article — raw JSON, missing id, store failure
  • GET /api/post — HTML preview escaping and paragraphs, store failure
  • GET /api/home
"""

import pytest

from app.routers.records import render_paragraphs, render_post


class TestArticle:
    def test_returns_record(self, test_client, store_transport):
        resp = test_client.get("/api/article", params={"id": "g1"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == "g1"
        assert body["title"] == "Storm hits"
        assert store_transport.requests[0].url.path == "/api/collections/publish_ready/records/g1"

    def test_missing_id(self, test_client):
        resp = test_client.get("/api/article")
        assert resp.status_code == 400
        assert resp.text == "Missing id"

    def test_not_found(self, test_client, store_transport):
        resp = test_client.get("/api/article", params={"id": "nope"})
        assert resp.status_code == 500
        assert resp.json() == {"error": "Record store error", "status": 404}


class TestPost:
    def test_renders_html(self, test_client, store_transport):
        resp = test_client.get("/api/post", params={"id": "g1"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert "<h1>Storm hits</h1>" in resp.text
        assert '<p class="summary">Short</p>' in resp.text
        assert "<p>One</p>\n<p>Two</p>" in resp.text
        assert 'name="robots" content="noindex,nofollow"' in resp.text

    def test_store_failure_is_502(self, test_client, store_transport):
        store_transport.fail_collection("publish_ready", 503, "down for maintenance")
        resp = test_client.get("/api/post", params={"id": "g1"})

        assert resp.status_code == 502
        assert resp.text == "Record store error 503: down for maintenance"

    def test_missing_id(self, test_client):
        assert test_client.get("/api/post").status_code == 400


class TestRendering:
    def test_escapes_markup(self):
        html = render_post({"title": "<script>x</script>", "summary": "a & b", "body": "1 < 2"})
        assert "<script>" not in html
        assert "&lt;script&gt;x&lt;/script&gt;" in html
        assert "a &amp; b" in html
        assert "<p>1 &lt; 2</p>" in html

    def test_paragraphs_split_on_blank_lines(self):
        assert render_paragraphs("a\nb\n\n  \nc") == "<p>a\nb</p>\n<p>c</p>"

    def test_missing_fields(self):
        html = render_post({})
        assert "<title></title>" in html
        assert "<p></p>" in html

    @pytest.mark.parametrize("body, expected", [
        (42, "<p>42</p>"),
        (0, "<p>0</p>"),
        (["a", "<b>"], "<p>['a', '&lt;b&gt;']</p>"),
        (None, "<p></p>"),
    ])
    def test_non_string_body(self, body, expected):
        assert expected in render_post({"title": "t", "body": body})

    def test_non_string_body_endpoint(self, test_client, store_transport):
        store_transport.collections["publish_ready"][0]["body"] = {"blocks": 2}
        resp = test_client.get("/api/post", params={"id": "g1"})
        assert resp.status_code == 200
        assert "<p>{'blocks': 2}</p>" in resp.text


def test_home(test_client):
    assert test_client.get("/api/home").json() == {"ok": True, "api": "pipeline-dashboard"}
