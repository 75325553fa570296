"""End-to-end tests for the HTTP API."""
import pytest

from realm_pkm.observability import metrics
from realm_pkm.security.tokens import JwtTokenProvider
from tests.helpers import TEST_PASSWORD, TEST_SECRET, register


def create_note(client, headers, title, **fields):
    response = client.post("/api/notes", json={"title": title, **fields}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert "version" in data
        assert "uptime_seconds" in data

    def test_request_id_is_echoed_or_generated(self, client):
        echoed = client.get("/health", headers={"X-Request-ID": "trace-123"})
        assert echoed.headers["X-Request-ID"] == "trace-123"

        generated = client.get("/health", headers={"X-Request-ID": "bad id!"})
        assert generated.headers["X-Request-ID"] != "bad id!"
        assert len(generated.headers["X-Request-ID"]) == 12

    def test_unhandled_error_keeps_request_id(self, client, auth_headers, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(client.app.state.note_service, "list_notes", explode)
        metrics.reset()
        response = client.get(
            "/api/notes", headers={**auth_headers, "X-Request-ID": "trace-500"}
        )
        assert response.status_code == 500
        assert response.headers["X-Request-ID"] == "trace-500"
        assert response.json() == {
            "error": "InternalError",
            "message": "Internal server error",
            "error_id": "trace-500",
        }
        assert metrics.get_metrics()["http_request"]["error_codes"] == {"RuntimeError": 1}


class TestAuthEndpoints:
    """Tests for /api/auth."""

    def test_register_login_and_me(self, client):
        headers = register(client, email="dave@example.com", name="Dave")
        me = client.get("/api/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["email"] == "dave@example.com"
        assert "password_hash" not in me.json()

        login = client.post(
            "/api/auth/login", json={"email": "dave@example.com", "password": TEST_PASSWORD}
        )
        assert login.status_code == 200
        body = login.json()
        assert body["token_type"] == "Bearer"
        assert body["user"]["display_name"] == "Dave"

    def test_register_conflict_and_weak_password(self, client):
        register(client, email="erin@example.com")
        duplicate = client.post(
            "/api/auth/register",
            json={"email": "erin@example.com", "password": TEST_PASSWORD, "display_name": "E"},
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["code_name"] == "AUTH_EMAIL_TAKEN"

        weak = client.post(
            "/api/auth/register",
            json={"email": "frank@example.com", "password": "short", "display_name": "F"},
        )
        assert weak.status_code == 400
        assert weak.json()["code_name"] == "AUTH_WEAK_PASSWORD"

    def test_bad_login_is_unauthorized(self, client):
        register(client, email="gina@example.com")
        response = client.post(
            "/api/auth/login", json={"email": "gina@example.com", "password": "Wrong1!pass"}
        )
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_refresh_and_validate(self, client):
        registration = client.post(
            "/api/auth/register",
            json={"email": "hank@example.com", "password": TEST_PASSWORD, "display_name": "H"},
        ).json()
        refreshed = client.post(
            "/api/auth/refresh", json={"refresh_token": registration["refresh_token"]}
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["refresh_token"] == registration["refresh_token"]

        headers = {"Authorization": f"Bearer {refreshed.json()['access_token']}"}
        validated = client.post("/api/auth/validate", headers=headers)
        assert validated.status_code == 200
        assert validated.json()["valid"] is True
        assert validated.json()["remaining_ms"] > 0

        # Refresh tokens are not access tokens
        as_access = {"Authorization": f"Bearer {registration['refresh_token']}"}
        assert client.get("/api/auth/me", headers=as_access).status_code == 401

    def test_missing_or_expired_token(self, client, auth_headers):
        assert client.get("/api/notes").status_code == 401
        bad = {"Authorization": "Bearer not-a-token"}
        assert client.get("/api/notes", headers=bad).status_code == 401

        expired = JwtTokenProvider(secret=TEST_SECRET, expiration_ms=-1000).generate_token(
            "carol@example.com"
        )
        response = client.get("/api/notes", headers={"Authorization": f"Bearer {expired}"})
        assert response.status_code == 401
        assert response.json()["code_name"] == "AUTH_TOKEN_EXPIRED"

    def test_profile_and_password(self, client, auth_headers):
        updated = client.put("/api/auth/me", json={"bio": "Hi"}, headers=auth_headers)
        assert updated.status_code == 200
        assert updated.json()["bio"] == "Hi"

        changed = client.post(
            "/api/auth/me/password",
            json={"current_password": TEST_PASSWORD, "new_password": "Newer2@pass"},
            headers=auth_headers,
        )
        assert changed.status_code == 204
        login = client.post(
            "/api/auth/login", json={"email": "carol@example.com", "password": "Newer2@pass"}
        )
        assert login.status_code == 200

    def test_deactivate(self, client, auth_headers):
        assert client.delete("/api/auth/me", headers=auth_headers).status_code == 204
        assert client.get("/api/auth/me", headers=auth_headers).status_code == 401


class TestNoteEndpoints:
    """Tests for /api/notes."""

    def test_note_crud(self, client, auth_headers):
        note = create_note(client, auth_headers, "First", content="<p>Hello #world</p>")
        assert note["tags"] == ["world"]
        assert note["display_summary"] == "Hello #world"

        fetched = client.get(f"/api/notes/{note['id']}", headers=auth_headers)
        assert fetched.status_code == 200
        assert fetched.json()["content"] == "<p>Hello #world</p>"

        updated = client.put(
            f"/api/notes/{note['id']}", json={"title": "Renamed"}, headers=auth_headers
        )
        assert updated.json()["title"] == "Renamed"

        listing = client.get("/api/notes", headers=auth_headers).json()
        assert listing["total"] == 1
        assert "content" not in listing["notes"][0]

        assert client.delete(f"/api/notes/{note['id']}", headers=auth_headers).status_code == 204
        assert client.get(f"/api/notes/{note['id']}", headers=auth_headers).status_code == 404

    def test_validation_errors_are_400(self, client, auth_headers):
        blank = client.post("/api/notes", json={"title": "  "}, headers=auth_headers)
        assert blank.status_code == 400
        assert blank.json()["code_name"] == "NOTE_TITLE_REQUIRED"

        missing = client.post("/api/notes", json={"content": "no title"}, headers=auth_headers)
        assert missing.status_code == 400
        assert missing.json()["code_name"] == "VALIDATION_FAILED"
        assert missing.json()["details"]["field"] == "title"

    def test_other_users_note_is_forbidden(self, client, auth_headers):
        note = create_note(client, auth_headers, "Mine")
        intruder = register(client, email="ivan@example.com", name="Ivan")
        response = client.get(f"/api/notes/{note['id']}", headers=intruder)
        assert response.status_code == 403
        assert response.json()["code_name"] == "NOTE_ACCESS_DENIED"

    def test_flags_and_tags(self, client, auth_headers):
        note = create_note(client, auth_headers, "Flags", tags=["one"])
        note_id = note["id"]
        assert client.post(f"/api/notes/{note_id}/favorite", headers=auth_headers).json()[
            "is_favorite"
        ]
        status = client.put(
            f"/api/notes/{note_id}/status", json={"status": "published"}, headers=auth_headers
        )
        assert status.json()["status"] == "PUBLISHED"
        bad_status = client.put(
            f"/api/notes/{note_id}/status", json={"status": "gone"}, headers=auth_headers
        )
        assert bad_status.status_code == 400

        tagged = client.post(f"/api/notes/{note_id}/tags", json={"tag": "Two"},
                             headers=auth_headers)
        assert tagged.json()["tags"] == ["one", "two"]
        untagged = client.delete(f"/api/notes/{note_id}/tags/one", headers=auth_headers)
        assert untagged.json()["tags"] == ["two"]

        assert client.get("/api/notes/tags", headers=auth_headers).json() == {"two": 1}
        assert len(client.get("/api/notes/tag/two", headers=auth_headers).json()) == 1
        assert len(client.get("/api/notes/favorites", headers=auth_headers).json()) == 1
        assert len(client.get("/api/notes/status/published", headers=auth_headers).json()) == 1
        renamed = client.put("/api/notes/tags/two", json={"new_name": "2"},
                             headers=auth_headers)
        assert renamed.json() == {"renamed": 1}

    def test_history_and_restore(self, client, auth_headers):
        note = create_note(client, auth_headers, "V1", content="<p>first</p>")
        client.put(f"/api/notes/{note['id']}", json={"content": "<p>second</p>"},
                   headers=auth_headers)

        history = client.get(f"/api/notes/{note['id']}/history", headers=auth_headers).json()
        assert [v["version_number"] for v in history] == [1]

        restored = client.post(
            f"/api/notes/{note['id']}/history/1/restore", headers=auth_headers
        )
        assert restored.json()["content"] == "<p>first</p>"
        missing = client.post(
            f"/api/notes/{note['id']}/history/9/restore", headers=auth_headers
        )
        assert missing.status_code == 404

    def test_search_and_statistics(self, client, auth_headers):
        create_note(client, auth_headers, "Quantum note", content="<p>entangled</p>")
        create_note(client, auth_headers, "Other")

        results = client.get("/api/notes/search", params={"q": "entangled"},
                             headers=auth_headers).json()
        assert results["total"] == 1
        assert results["results"][0]["title"] == "Quantum note"

        stats = client.get("/api/notes/statistics", headers=auth_headers).json()
        assert stats["total_notes"] == 2
        assert client.get("/api/notes/suggestions", params={"q": "qu"},
                          headers=auth_headers).json() == ["quantum"]

    def test_analysis_and_summary(self, client, auth_headers):
        note = create_note(client, auth_headers, "Analyze", content="<h2>H</h2><p>Text.</p>")
        analysis = client.get(f"/api/notes/{note['id']}/analysis", headers=auth_headers).json()
        assert analysis["heading_count"] == 1
        summarized = client.post(f"/api/notes/{note['id']}/summary", headers=auth_headers)
        assert summarized.json()["summary"] == "HText."


class TestLinkEndpoints:
    """Tests for link routes under /api/notes/{id}."""

    @pytest.fixture
    def pair(self, client, auth_headers):
        return (
            create_note(client, auth_headers, "Source"),
            create_note(client, auth_headers, "Target"),
        )

    def test_create_and_list_links(self, client, auth_headers, pair):
        source, target = pair
        created = client.post(
            f"/api/notes/{source['id']}/links",
            json={"target_id": target["id"], "link_type": "supports", "context": "why"},
            headers=auth_headers,
        )
        assert created.status_code == 201
        link = created.json()
        assert link["link_type"] == "SUPPORTS"
        assert link["display_name"] == "Supports"

        duplicate = client.post(
            f"/api/notes/{source['id']}/links",
            json={"target_id": target["id"], "link_type": "supports"},
            headers=auth_headers,
        )
        assert duplicate.status_code == 409

        outgoing = client.get(f"/api/notes/{source['id']}/links", headers=auth_headers).json()
        assert [item["id"] for item in outgoing] == [link["id"]]
        backlinks = client.get(f"/api/notes/{target['id']}/backlinks",
                               headers=auth_headers).json()
        assert [n["id"] for n in backlinks["notes"]] == [source["id"]]
        linked = client.get(f"/api/notes/{source['id']}/linked", headers=auth_headers).json()
        assert [n["id"] for n in linked] == [target["id"]]

    def test_self_link_is_400(self, client, auth_headers, pair):
        source, _ = pair
        response = client.post(
            f"/api/notes/{source['id']}/links", json={"target_id": source["id"]},
            headers=auth_headers,
        )
        assert response.status_code == 400
        assert response.json()["code_name"] == "LINK_SELF_REFERENCE"

    def test_update_traverse_and_delete_link(self, client, auth_headers, pair):
        source, target = pair
        link = client.post(
            f"/api/notes/{source['id']}/links", json={"target_id": target["id"]},
            headers=auth_headers,
        ).json()
        base = f"/api/notes/{source['id']}/links/{link['id']}"

        updated = client.put(base, json={"strength": 0.4}, headers=auth_headers)
        assert updated.json()["strength"] == 0.4
        wrong_source = client.put(
            f"/api/notes/{target['id']}/links/{link['id']}", json={"strength": 0.2},
            headers=auth_headers,
        )
        assert wrong_source.status_code == 404

        traversed = client.post(f"{base}/traverse", headers=auth_headers)
        assert traversed.json()["traversal_count"] == 1

        assert client.delete(base, headers=auth_headers).status_code == 204
        assert client.delete(base, headers=auth_headers).status_code == 404

    def test_discovery_routes(self, client, auth_headers, pair):
        source, target = pair
        client.post(f"/api/notes/{source['id']}/links", json={"target_id": target["id"]},
                    headers=auth_headers)

        related = client.get(f"/api/notes/{source['id']}/related", headers=auth_headers).json()
        assert [n["id"] for n in related] == [target["id"]]
        bad_depth = client.get(f"/api/notes/{source['id']}/related", params={"depth": 9},
                               headers=auth_headers)
        assert bad_depth.status_code == 400

        strength = client.get(
            f"/api/notes/{source['id']}/strength/{target['id']}", headers=auth_headers
        ).json()
        assert strength["strength"] >= 0.5
        traverse = client.get(f"/api/notes/{source['id']}/traverse", headers=auth_headers)
        assert [n["id"] for n in traverse.json()] == [target["id"]]
        assert client.get(f"/api/notes/{source['id']}/link-suggestions",
                          headers=auth_headers).json() == []
        assert client.get(f"/api/notes/{source['id']}/similar",
                          headers=auth_headers).status_code == 200


class TestGraphEndpoints:
    """Tests for /api/graph."""

    @pytest.fixture
    def chain(self, client, auth_headers):
        notes = [create_note(client, auth_headers, title) for title in ("A", "B", "C")]
        for first, second in zip(notes, notes[1:]):
            client.post(f"/api/notes/{first['id']}/links", json={"target_id": second["id"]},
                        headers=auth_headers)
        create_note(client, auth_headers, "Loner")
        return notes

    def test_graph_data_and_subgraph(self, client, auth_headers, chain):
        data = client.get("/api/graph/data", headers=auth_headers).json()
        assert data["total_nodes"] == 4
        assert data["total_edges"] == 2

        subgraph = client.get(f"/api/graph/subgraph/{chain[0]['id']}",
                              params={"depth": 1}, headers=auth_headers).json()
        assert subgraph["center_node_id"] == chain[0]["id"]
        assert {node["id"] for node in subgraph["nodes"]} == {chain[0]["id"], chain[1]["id"]}

    def test_path(self, client, auth_headers, chain):
        found = client.get(
            "/api/graph/path", params={"from": chain[0]["id"], "to": chain[2]["id"]},
            headers=auth_headers,
        ).json()
        assert found == {"path": [n["id"] for n in chain], "length": 2, "found": True}
        backwards = client.get(
            "/api/graph/path", params={"from": chain[2]["id"], "to": chain[0]["id"]},
            headers=auth_headers,
        ).json()
        assert backwards["found"] is False

    def test_stats_clusters_orphans_hubs(self, client, auth_headers, chain):
        stats = client.get("/api/graph/stats", headers=auth_headers).json()
        assert stats["total_nodes"] == 4
        assert stats["orphan_count"] == 1
        clusters = client.get("/api/graph/clusters", headers=auth_headers).json()
        assert len(clusters) == 1 and clusters[0]["size"] == 3
        orphans = client.get("/api/graph/orphans", headers=auth_headers).json()
        assert [n["title"] for n in orphans] == ["Loner"]
        hubs = client.get("/api/graph/hubs", params={"min_connections": 2},
                          headers=auth_headers).json()
        assert [hub["note_id"] for hub in hubs] == [chain[1]["id"]]
        analytics = client.get("/api/graph/analytics", headers=auth_headers).json()
        assert analytics["total_relationships"] == 2

    def test_search_nodes(self, client, auth_headers, chain):
        nodes = client.get("/api/graph/search", params={"q": "loner"},
                           headers=auth_headers).json()
        assert [node["title"] for node in nodes] == ["Loner"]
