"""
HTTP contract for the curriculum API using the in-memory store.

Why:
    The adapter must map typed failures to stable status codes and never let
    responses be cached by intermediaries.
"""
from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport

from web import main
from web.routes import curriculum as curriculum_routes


pytestmark = pytest.mark.anyio("asyncio")


def _client(user: str | None = "teacher-1") -> httpx.AsyncClient:
    headers = {main.IDENTITY_HEADER: user} if user else {}
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test", headers=headers)


@pytest.fixture(autouse=True)
def _wire_services(services):
    curriculum_routes.set_services(services)
    yield


async def _course_with_section(client: httpx.AsyncClient):
    r_course = await client.post("/api/courses", json={"title": "Python 101", "language": "python"})
    assert r_course.status_code == 201
    course = r_course.json()
    r_sec = await client.post(f"/api/courses/{course['id']}/sections", json={"title": "Basics"})
    assert r_sec.status_code == 201
    return course, r_sec.json()


async def test_requires_identity():
    async with _client(user=None) as client:
        r = await client.get("/api/courses")
    assert r.status_code == 401
    assert r.json() == {"error": "unauthenticated"}
    assert r.headers.get("Cache-Control") == "private, no-store"


async def test_health_is_public():
    async with _client(user=None) as client:
        r = await client.get("/health")
    assert r.status_code == 200


async def test_course_lifecycle():
    async with _client() as client:
        course, section = await _course_with_section(client)
        assert course["created_by"] == "teacher-1"
        assert course["status"] == "draft"
        assert "version" not in course
        assert section["order_index"] == 0

        r_detail = await client.get(f"/api/courses/{course['id']}")
        assert r_detail.status_code == 200
        detail = r_detail.json()
        assert detail["created_by_name"] == "Ada Teacher"
        assert detail["section_count"] == 1
        assert detail["lesson_count"] == 0
        assert detail["sections"][0]["id"] == section["id"]
        assert r_detail.headers.get("Cache-Control") == "private, no-store"

        r_pub = await client.post(f"/api/courses/{course['id']}/publish")
        assert r_pub.status_code == 200 and r_pub.json()["status"] == "published"
        r_again = await client.post(f"/api/courses/{course['id']}/publish")
        assert r_again.status_code == 400
        assert r_again.json()["error"] == "already_published"

        r_list = await client.get("/api/courses", params={"status": "published"})
        assert r_list.status_code == 200
        body = r_list.json()
        assert [c["id"] for c in body["courses"]] == [course["id"]]
        assert body["meta"] == {"total": 1, "page": 1, "limit": 20, "total_pages": 1}

        r_patch = await client.patch(f"/api/courses/{course['id']}", json={"description": "Start here"})
        assert r_patch.status_code == 200
        assert r_patch.json()["description"] == "Start here"


async def test_course_validation_and_not_found():
    async with _client() as client:
        r_bad = await client.post("/api/courses", json={"title": "x", "language": "cobol"})
        assert r_bad.status_code == 400
        assert r_bad.json()["error"] == "invalid_language"
        r_missing = await client.get("/api/courses/missing")
        assert r_missing.status_code == 404
        assert r_missing.json()["error"] == "course_not_found"
        r_empty = await client.patch("/api/courses/missing", json={})
        assert r_empty.status_code == 400


async def test_section_delete_conflict_and_compaction():
    async with _client() as client:
        course, s0 = await _course_with_section(client)
        cid = course["id"]
        s1 = (await client.post(f"/api/courses/{cid}/sections", json={"title": "Middle"})).json()
        s2 = (await client.post(f"/api/courses/{cid}/sections", json={"title": "Last"})).json()
        r_lesson = await client.post(f"/api/courses/{cid}/sections/{s1['id']}/lessons", json={"title": "L"})
        assert r_lesson.status_code == 201

        r_conflict = await client.delete(f"/api/courses/{cid}/sections/{s1['id']}")
        assert r_conflict.status_code == 409
        assert r_conflict.json()["error"] == "section_not_empty"

        r_del_lesson = await client.delete(f"/api/courses/{cid}/sections/{s1['id']}/lessons/{r_lesson.json()['id']}")
        assert r_del_lesson.status_code == 204
        r_del = await client.delete(f"/api/courses/{cid}/sections/{s1['id']}")
        assert r_del.status_code == 204

        detail = (await client.get(f"/api/courses/{cid}")).json()
        assert [(s["id"], s["order_index"]) for s in detail["sections"]] == [(s0["id"], 0), (s2["id"], 1)]


async def test_reorder_sections_validation():
    async with _client() as client:
        course, s0 = await _course_with_section(client)
        cid = course["id"]
        s1 = (await client.post(f"/api/courses/{cid}/sections", json={"title": "Two"})).json()
        r_ok = await client.post(f"/api/courses/{cid}/sections/reorder", json={"section_ids": [s1["id"], s0["id"]]})
        assert r_ok.status_code == 200
        assert [s["id"] for s in r_ok.json()] == [s1["id"], s0["id"]]
        r_bad = await client.post(f"/api/courses/{cid}/sections/reorder", json={"section_ids": [s0["id"]]})
        assert r_bad.status_code == 400
        assert r_bad.json()["error"] == "invalid_reorder_set"


async def test_delete_course_assigned_to_class(classes):
    async with _client() as client:
        course, _ = await _course_with_section(client)
        classes.assign("class-9b", [course["id"]])
        r = await client.delete(f"/api/courses/{course['id']}")
        assert r.status_code == 409
        assert r.json()["error"] == "course_assigned_to_classes"
        classes.unassign("class-9b", course["id"])
        assert (await client.delete(f"/api/courses/{course['id']}")).status_code == 204
        assert (await client.get(f"/api/courses/{course['id']}")).status_code == 404


async def test_lesson_lock_flow(clock):
    async with _client("alice") as alice, _client("bob") as bob:
        course, section = await _course_with_section(alice)
        base = f"/api/courses/{course['id']}/sections/{section['id']}/lessons"
        lesson = (await alice.post(base, json={"title": "Loops"})).json()

        r_lock = await alice.post(f"/api/lessons/{lesson['id']}/lock")
        assert r_lock.status_code == 200
        assert r_lock.json()["locked_by"] == "alice"

        clock.advance(minutes=10)
        r_steal = await bob.post(f"/api/lessons/{lesson['id']}/lock")
        assert r_steal.status_code == 409
        assert r_steal.json()["error"] == "locked_by_another_user"

        r_edit = await bob.patch(f"{base}/{lesson['id']}", json={"content": "bob"})
        assert r_edit.status_code == 409
        assert r_edit.json()["error"] == "lesson_locked"

        r_release = await bob.delete(f"/api/lessons/{lesson['id']}/lock")
        assert r_release.status_code == 403

        clock.advance(minutes=25)
        r_takeover = await bob.post(f"/api/lessons/{lesson['id']}/lock")
        assert r_takeover.status_code == 200
        assert r_takeover.json()["locked_by"] == "bob"

        assert (await bob.delete(f"/api/lessons/{lesson['id']}/lock")).status_code == 204
        assert (await alice.delete(f"/api/lessons/{lesson['id']}/lock")).status_code == 204

        r_missing = await alice.post("/api/lessons/missing/lock")
        assert r_missing.status_code == 404


async def test_lesson_content_endpoints():
    async with _client() as client:
        course, section = await _course_with_section(client)
        base = f"/api/courses/{course['id']}/sections/{section['id']}/lessons"
        lesson = (await client.post(base, json={"title": "Functions", "code_mode": "python"})).json()
        lid = lesson["id"]

        e1 = (await client.post(f"/api/lessons/{lid}/exercises", json={"title": "Def"})).json()
        e2 = (await client.post(f"/api/lessons/{lid}/exercises", json={"title": "Return"})).json()
        r_reorder = await client.post(f"/api/lessons/{lid}/exercises/reorder", json={"exercise_ids": [e2["id"], e1["id"]]})
        assert [e["title"] for e in r_reorder.json()] == ["Return", "Def"]

        assert (await client.get(f"/api/lessons/{lid}/quiz")).status_code == 404
        assert (await client.post(f"/api/lessons/{lid}/quiz", json={"questions": [{"q": "?"}]})).status_code == 201
        r_dupe = await client.post(f"/api/lessons/{lid}/quiz", json={"questions": []})
        assert r_dupe.status_code == 409

        r_full = await client.get(f"{base}/{lid}")
        assert r_full.status_code == 200
        full = r_full.json()
        assert [e["title"] for e in full["exercises"]] == ["Return", "Def"]
        assert full["quiz"]["questions"] == [{"q": "?"}]

        r_copy = await client.post(f"{base}/{lid}/duplicate")
        assert r_copy.status_code == 201
        assert r_copy.json()["title"] == "Functions (Copy)"
        assert r_copy.json()["order_index"] == 1

        r_wrong_section = await client.get(f"/api/courses/{course['id']}/sections/nope/lessons/{lid}")
        assert r_wrong_section.status_code == 404


class _DownStore:
    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            from curriculum.errors import StoreUnavailable

            raise StoreUnavailable("db down")

        return _fail


async def test_store_outage_maps_to_503():
    from curriculum.collaborators import InMemoryClassAssignments, StaticUserDirectory
    from curriculum.wiring import build_services

    curriculum_routes.set_services(
        build_services(store=_DownStore(), classes=InMemoryClassAssignments(), users=StaticUserDirectory())
    )
    async with _client() as client:
        r = await client.get("/api/courses/any")
    assert r.status_code == 503
    assert r.json() == {"error": "store_unavailable"}
