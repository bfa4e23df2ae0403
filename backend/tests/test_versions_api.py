# backend/tests/test_versions_api.py
# 功能: 版本历史 API 测试（内存 SQLite + 依赖覆盖）
# 主要测试: 保存/列表/详情/恢复/比较/统计/清理，以及异常到 HTTP 状态码的映射

"""
版本历史 API 测试
运行: cd backend && python -m pytest tests/test_versions_api.py -v
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from core.database import create_db_engine, get_session_maker, init_db
from core.version_service import VersionStore, get_version_store
from main import app


DOC = "song-0001"
BASE = f"/api/songs/{DOC}/versions"


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    yield get_session_maker(engine)
    engine.dispose()


@pytest.fixture
def client(session_factory):
    store = VersionStore(session_factory)
    app.dependency_overrides[get_version_store] = lambda: store
    c = TestClient(app)
    try:
        yield c
    finally:
        app.dependency_overrides.clear()


def save(client, body, **kwargs):
    payload = {
        "snapshot": {"title": "Amazing Grace", "body": body},
        "author_name": "Alice",
    }
    payload["snapshot"].update(kwargs.pop("snapshot", {}))
    payload.update(kwargs)
    return client.post(BASE, json=payload)


class TestVersionsAPI:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_list_empty(self, client):
        response = client.get(BASE)
        assert response.status_code == 200
        data = response.json()
        assert data["head_version"] == 0
        assert data["versions"] == []

    def test_save_and_read_back(self, client):
        first = save(client, "A\nB\nC", version_type="import")
        assert first.status_code == 201
        assert first.json()["version_number"] == 1
        assert first.json()["is_delta"] is False

        second = save(client, "A\nB2\nC", snapshot={"original_key": "G"})
        assert second.status_code == 201
        item = second.json()
        assert item["version_number"] == 2
        assert item["is_delta"] is True
        assert item["base_version_number"] == 1
        assert item["change_summary"] == "Auto-saved changes"

        detail = client.get(f"{BASE}/2")
        assert detail.status_code == 200
        assert detail.json()["content"] == "A\nB2\nC"
        assert detail.json()["version"]["original_key"] == "G"

        listing = client.get(BASE).json()
        assert listing["head_version"] == 2
        assert [v["version_number"] for v in listing["versions"]] == [2, 1]

    def test_restore(self, client):
        save(client, "A\nB\nC")
        save(client, "A\nB2\nC")
        response = client.post(f"{BASE}/1/restore", json={"author_name": "Bob"})
        assert response.status_code == 201
        item = response.json()
        assert item["version_number"] == 3
        assert item["version_type"] == "restore"
        assert item["change_summary"] == "Restored from version 1"
        assert client.get(f"{BASE}/3").json()["content"] == "A\nB\nC"
        assert len(client.get(BASE).json()["versions"]) == 3

    def test_compare(self, client):
        save(client, "A\nB\nC", snapshot={"tempo": 72})
        save(client, "A\nB2\nC", snapshot={"tempo": 80})
        response = client.get(f"{BASE}/compare", params={"from_version": 1, "to_version": 2})
        assert response.status_code == 200
        data = response.json()
        assert [(line["kind"], line["content"]) for line in data["lines"]] == [
            ("keep", "A"),
            ("delete", "B"),
            ("insert", "B2"),
            ("keep", "C"),
        ]
        assert data["metadata_changes"] == [
            {"field": "Tempo", "old_value": "72 BPM", "new_value": "80 BPM"},
        ]

    def test_stats_and_integrity(self, client):
        save(client, "A\nB\nC")
        save(client, "A\nB2\nC")
        stats = client.get(f"{BASE}/stats").json()
        assert stats["version_count"] == 2
        assert stats["delta_version_count"] == 1
        integrity = client.get(f"{BASE}/integrity").json()
        assert integrity == {"ok": True, "problems": []}

    def test_prune_and_purge(self, client):
        for i in range(1, 6):
            save(client, f"line {i}")
        response = client.post(f"{BASE}/prune", json={"keep_last": 10})
        assert response.status_code == 200
        assert response.json()["deleted"] == []

        response = client.delete(BASE)
        assert response.status_code == 200
        assert response.json()["deleted_count"] == 5
        assert client.get(BASE).json()["versions"] == []


class TestErrorMapping:

    def test_unknown_document_is_404(self, client):
        response = client.get(f"{BASE}/1")
        assert response.status_code == 404
        assert response.json()["code"] == "DOCUMENT_NOT_FOUND"

    def test_unknown_version_is_404(self, client):
        save(client, "A")
        response = client.get(f"{BASE}/9")
        assert response.status_code == 404
        assert response.json()["code"] == "VERSION_NOT_FOUND"

    def test_head_conflict_is_409(self, client):
        save(client, "A")
        response = save(client, "B", expected_head=0)
        assert response.status_code == 409
        body = response.json()
        assert body["error"] is True
        assert body["code"] == "VERSION_NUMBER_CONFLICT"
        assert client.get(BASE).json()["head_version"] == 1

    def test_invalid_version_type_is_400(self, client):
        response = save(client, "A", version_type="branch")
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_VERSION_TYPE"

    def test_corrupt_payload_is_422(self, client, session_factory):
        save(client, "A\nB\nC")
        save(client, "A\nB2\nC")
        with session_factory() as db:
            db.execute(
                text("UPDATE song_versions SET payload = :p WHERE version_number = 2"),
                {"p": b"\x78\x9c\x01"},
            )
            db.commit()

        response = client.get(f"{BASE}/2")
        assert response.status_code == 422
        assert response.json()["code"] == "COMPRESSION_FAILURE"
        # 全量快照仍可读取
        assert client.get(f"{BASE}/1").status_code == 200

    def test_missing_body_field_is_validation_error(self, client):
        response = client.post(BASE, json={"author_name": "Alice"})
        assert response.status_code == 422
        assert "detail" in response.json()
