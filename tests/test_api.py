import pytest
from fastapi.testclient import TestClient

from neverending.api import create_app
from neverending.models import Chapter, Checkpoint, Step


@pytest.fixture
def api(machine):
    with TestClient(create_app(machine)) as client:
        yield client


def test_health(api):
    assert api.get("/health").json()["status"] == "healthy"


def test_create_start_and_read_chapters(api, machine):
    response = api.post("/works", json={"premise": "A baker inherits a haunted oven.", "title": "Crumbs"})
    assert response.status_code == 201
    work_id = response.json()["work_id"]
    assert response.json()["status"]["step"] == "outline_pending"

    response = api.post(f"/works/{work_id}/start")
    assert response.status_code == 202
    assert machine.wait(work_id, 10)

    status = api.get(f"/works/{work_id}/status").json()
    assert status["step"] == "awaiting_chapter_2_feedback"
    assert status["checkpoint"] == "chapter_2"
    assert status["chapters_generated"] == 3

    chapters = api.get(f"/works/{work_id}/chapters").json()
    assert [c["number"] for c in chapters] == [1, 2, 3]

    response = api.get(f"/works/{work_id}/chapters/2")
    assert response.status_code == 200
    assert api.get(f"/works/{work_id}/chapters/9").status_code == 404


def test_feedback_flow(api, machine, make_work):
    make_work("w1")
    api.post("/works/w1/start")
    machine.wait("w1", 10)

    body = {"checkpoint": "chapter_2", "pacing": "fast", "tone": "serious", "character": "love", "notes": "More jokes"}
    response = api.post("/works/w1/feedback", json=body)
    assert response.status_code == 202

    # A retried submission is answered without starting another batch
    again = api.post("/works/w1/feedback", json=body)
    assert again.status_code == 202
    machine.wait("w1", 10)

    assert machine.get_status("w1").step is Step.AWAITING_CHAPTER_5
    assert machine.store.get_feedback("w1", Checkpoint.CHAPTER_2).notes == "More jokes"


def test_feedback_errors(api, make_work):
    make_work("w1")
    body = {"checkpoint": "chapter_2", "pacing": "slow", "tone": "right", "character": "love"}

    response = api.post("/works/w1/feedback", json=body)
    assert response.status_code == 409
    assert response.json()["current"] == "outline_pending"

    assert api.post("/works/w1/feedback", json={**body, "pacing": "glacial"}).status_code == 422
    assert api.post("/works/nope/feedback", json=body).status_code == 404


def test_unknown_work(api):
    assert api.get("/works/nope/status").status_code == 404
    assert api.post("/works/nope/start").status_code == 404
    assert api.get("/works/nope/chapters").status_code == 404


def test_startup_resumes_interrupted_batches(machine, store, make_work):
    make_work("w1")
    current = store.get_work("w1").progress
    store.compare_and_set_progress("w1", current.version, current.advance("w1", Step.GENERATING_1_3))
    store.insert_chapter(Chapter(work_id="w1", number=1, content="Kept."))

    with TestClient(create_app(machine)):
        assert machine.wait("w1", 10)

    assert store.chapter_numbers("w1") == [1, 2, 3]
    assert machine.get_status("w1").step is Step.AWAITING_CHAPTER_2
