"""
Tests for the FastAPI server.
"""

import os
import sys
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import server
from image_generation import ImageGenerator, PlaceholderImageStrategy
from library import LibraryStore, User, generate_id, generate_token
from paginator import Paginator
from summarizer import TextSummarizer

SEVEN = "one two three four five six seven"


@pytest.fixture
def store(tmp_path, monkeypatch):
    """Point the server at a fresh library and uploads directory."""
    library = LibraryStore(str(tmp_path / "data"))
    monkeypatch.setattr(server, "store", library)
    monkeypatch.setattr(server, "UPLOADS_DIR", str(tmp_path / "uploads"))
    monkeypatch.setattr(server, "paginator", Paginator(words_per_page=3))
    monkeypatch.setattr(server, "summarizer", TextSummarizer())
    monkeypatch.setattr(server, "image_generator",
                        ImageGenerator([PlaceholderImageStrategy(size=64)]))
    return library


@pytest.fixture
def client(store):
    """Create a test client for the FastAPI app."""
    return TestClient(app=server.app)


def add_user(store, email="reader@example.com", role="user"):
    return store.add_user(User(id=generate_id(), name=email.split("@")[0], email=email,
                               token=generate_token(), role=role))


def auth(user):
    return {"Authorization": f"Bearer {user.token}"}


@pytest.fixture
def reader(store):
    return add_user(store)


@pytest.fixture
def admin(store):
    return add_user(store, email="admin@example.com", role="admin")


def upload(client, user, content=SEVEN.encode(), filename="novel.txt", title="Seven"):
    return client.post(
        "/api/novels",
        files={"novel": (filename, content, "application/octet-stream")},
        data={"title": title},
        headers=auth(user),
    )


@pytest.fixture
def novel(client, reader):
    response = upload(client, reader)
    assert response.status_code == 201
    return response.json()["novel"]


class TestHealthCheck:
    """Basic health checks for the server."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.text == "VisNovel API is running"

    def test_server_handles_invalid_routes(self, client):
        response = client.get("/this/route/does/not/exist")
        assert response.status_code == 404


class TestAuthentication:
    """Tests for bearer token checks."""

    def test_missing_token(self, client):
        assert client.get("/api/novels").status_code == 401

    def test_unknown_token(self, client):
        response = client.get("/api/novels", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_admin_route_requires_admin(self, client, reader):
        assert client.get("/api/novels/admin/all", headers=auth(reader)).status_code == 403


class TestUploadEndpoint:
    """Tests for uploading novels."""

    def test_upload_text(self, client, reader, store):
        response = upload(client, reader)
        assert response.status_code == 201
        novel = response.json()["novel"]
        assert novel["total_pages"] == 3
        assert novel["file_type"] == "txt"
        assert novel["owner_id"] == reader.id
        assert os.path.exists(novel["file_path"])
        assert store.get_novel(novel["id"]) is not None

    def test_upload_without_file_fails(self, client, reader):
        response = client.post("/api/novels", data={"title": "x"}, headers=auth(reader))
        assert response.status_code == 422

    def test_wrong_extension(self, client, reader):
        response = upload(client, reader, filename="novel.pdf")
        assert response.status_code == 400

    def test_title_required(self, client, reader):
        assert upload(client, reader, title="  ").status_code == 400

    def test_title_too_long(self, client, reader):
        assert upload(client, reader, title="x" * 101).status_code == 400

    def test_unreadable_epub_defaults_to_one_page(self, client, reader):
        response = upload(client, reader, content=b"not a zip", filename="broken.epub")
        assert response.status_code == 201
        assert response.json()["novel"]["total_pages"] == 1

    def test_empty_text_has_no_pages(self, client, reader):
        response = upload(client, reader, content=b"   ")
        assert response.json()["novel"]["total_pages"] == 0

    def test_failed_page_count_removes_file(self, client, reader, monkeypatch, tmp_path):
        async def broken(file_path, file_type):
            raise OSError("disk went away")

        monkeypatch.setattr(server.paginator, "count_pages", broken)
        with pytest.raises(OSError):
            upload(client, reader)
        assert os.listdir(tmp_path / "uploads" / "novels") == []


class TestNovelsAPI:
    """Tests for listing, reading and deleting novels."""

    def test_list_own_novels(self, client, reader, store, novel):
        other = add_user(store, email="other@example.com")
        upload(client, other, title="Theirs")

        response = client.get("/api/novels", headers=auth(reader))
        assert [n["title"] for n in response.json()["novels"]] == ["Seven"]

    def test_admin_lists_all(self, client, admin, novel):
        response = client.get("/api/novels/admin/all", headers=auth(admin))
        novels = response.json()["novels"]
        assert len(novels) == 1
        assert novels[0]["owner"]["email"] == "reader@example.com"

    def test_get_novel(self, client, reader, novel):
        response = client.get(f"/api/novels/{novel['id']}", headers=auth(reader))
        assert response.json()["novel"]["title"] == "Seven"

    def test_get_missing_novel(self, client, reader):
        assert client.get("/api/novels/missing", headers=auth(reader)).status_code == 404

    def test_other_user_cannot_read(self, client, store, novel):
        other = add_user(store, email="other@example.com")
        response = client.get(f"/api/novels/{novel['id']}", headers=auth(other))
        assert response.status_code == 403

    def test_read_page(self, client, reader, store, novel):
        response = client.get(f"/api/novels/{novel['id']}/page/2", headers=auth(reader))
        assert response.status_code == 200
        body = response.json()
        assert body["content"] == "four five six "
        assert body["page"] == 2
        assert body["total_pages"] == 3
        assert body["metadata"] == {"is_html": False}
        assert store.get_novel(novel["id"]).last_read_page == 2

    def test_pages_reassemble_document(self, client, reader, novel):
        pages = [
            client.get(f"/api/novels/{novel['id']}/page/{p}", headers=auth(reader)).json()["content"]
            for p in range(1, 4)
        ]
        assert "".join(pages) == SEVEN

    @pytest.mark.parametrize("page", [0, 4])
    def test_page_out_of_range(self, client, reader, novel, page):
        response = client.get(f"/api/novels/{novel['id']}/page/{page}", headers=auth(reader))
        assert response.status_code == 400

    def test_missing_file_is_server_error(self, client, reader, novel):
        os.remove(novel["file_path"])
        response = client.get(f"/api/novels/{novel['id']}/page/1", headers=auth(reader))
        assert response.status_code == 500

    def test_delete_novel(self, client, reader, store, novel):
        response = client.delete(f"/api/novels/{novel['id']}", headers=auth(reader))
        assert response.status_code == 200
        assert store.get_novel(novel["id"]) is None
        assert not os.path.exists(novel["file_path"])


class TestBookmarksAndNotes:
    """Tests for bookmark and note endpoints."""

    def test_add_and_remove_bookmark(self, client, reader, novel):
        url = f"/api/novels/{novel['id']}/bookmarks"
        response = client.post(url, json={"page": 2, "name": "Here"}, headers=auth(reader))
        bookmarks = response.json()["bookmarks"]
        assert bookmarks[0]["page"] == 2

        response = client.delete(f"{url}/{bookmarks[0]['id']}", headers=auth(reader))
        assert response.json()["bookmarks"] == []

    def test_duplicate_bookmark(self, client, reader, novel):
        url = f"/api/novels/{novel['id']}/bookmarks"
        client.post(url, json={"page": 2}, headers=auth(reader))
        assert client.post(url, json={"page": 2}, headers=auth(reader)).status_code == 400

    def test_bookmark_invalid_page(self, client, reader, novel):
        url = f"/api/novels/{novel['id']}/bookmarks"
        assert client.post(url, json={"page": 9}, headers=auth(reader)).status_code == 400

    def test_note_lifecycle(self, client, reader, novel):
        url = f"/api/novels/{novel['id']}/notes"
        notes = client.post(url, json={"page": 1, "content": "hmm"},
                            headers=auth(reader)).json()["notes"]
        note_id = notes[0]["id"]

        notes = client.patch(f"{url}/{note_id}", json={"content": "aha"},
                             headers=auth(reader)).json()["notes"]
        assert notes[0]["content"] == "aha"

        notes = client.delete(f"{url}/{note_id}", headers=auth(reader)).json()["notes"]
        assert notes == []

    def test_note_requires_content(self, client, reader, novel):
        url = f"/api/novels/{novel['id']}/notes"
        assert client.post(url, json={"page": 1}, headers=auth(reader)).status_code == 400

    def test_update_missing_note(self, client, reader, novel):
        url = f"/api/novels/{novel['id']}/notes/missing"
        response = client.patch(url, json={"content": "x"}, headers=auth(reader))
        assert response.status_code == 404


class TestReadingProgressAPI:
    """Tests for reading progress."""

    def test_update_progress(self, client, reader, store, novel):
        response = client.patch(
            f"/api/novels/{novel['id']}/progress",
            json={"page": 3, "reading_time": 12, "completed": True},
            headers=auth(reader),
        )
        assert response.status_code == 200
        updated = response.json()["novel"]
        assert updated["last_read_page"] == 3
        assert updated["total_reading_time"] == 12
        assert updated["completed"] is True

        stats = store.get_user(reader.id).reading_stats
        assert stats.total_reading_time == 12
        assert stats.novels_completed == 1

    def test_completion_counted_once(self, client, reader, store, novel):
        url = f"/api/novels/{novel['id']}/progress"
        client.patch(url, json={"completed": True}, headers=auth(reader))
        client.patch(url, json={"completed": True}, headers=auth(reader))
        assert store.get_user(reader.id).reading_stats.novels_completed == 1

    def test_invalid_page(self, client, reader, novel):
        response = client.patch(f"/api/novels/{novel['id']}/progress", json={"page": 10},
                                headers=auth(reader))
        assert response.status_code == 400


class TestAnnotationsAPI:
    """Tests for annotations."""

    def create(self, client, user, novel, page=1, start=0, **extra):
        body = {
            "page": page,
            "text_selection": {"start_offset": start, "end_offset": start + 3,
                               "selected_text": "one"},
            **extra,
        }
        return client.post(f"/api/annotations/novels/{novel['id']}", json=body,
                           headers=auth(user))

    def test_create_and_list(self, client, reader, novel):
        response = self.create(client, reader, novel, note="first word")
        assert response.status_code == 201
        annotation = response.json()["annotation"]
        assert annotation["color"] == "#ffff00"
        assert annotation["category"] == "highlight"

        self.create(client, reader, novel, page=2)
        all_notes = client.get(f"/api/annotations/novels/{novel['id']}", headers=auth(reader))
        assert len(all_notes.json()["annotations"]) == 2

        page_two = client.get(f"/api/annotations/novels/{novel['id']}/pages/2",
                              headers=auth(reader))
        assert [a["page"] for a in page_two.json()["annotations"]] == [2]

    def test_missing_fields(self, client, reader, novel):
        response = client.post(f"/api/annotations/novels/{novel['id']}", json={"page": 1},
                               headers=auth(reader))
        assert response.status_code == 400

    def test_invalid_category(self, client, reader, novel):
        assert self.create(client, reader, novel, category="gossip").status_code == 400

    def test_update_and_delete(self, client, reader, novel):
        annotation = self.create(client, reader, novel).json()["annotation"]
        response = client.patch(f"/api/annotations/{annotation['id']}",
                                json={"color": "#00ff00", "category": "question"},
                                headers=auth(reader))
        assert response.json()["annotation"]["color"] == "#00ff00"
        assert response.json()["annotation"]["category"] == "question"

        response = client.delete(f"/api/annotations/{annotation['id']}", headers=auth(reader))
        assert response.status_code == 200

    def test_cannot_edit_others_annotation(self, client, reader, store, novel):
        annotation = self.create(client, reader, novel).json()["annotation"]
        other = add_user(store, email="other@example.com")
        response = client.delete(f"/api/annotations/{annotation['id']}", headers=auth(other))
        assert response.status_code == 403


class TestImagesAPI:
    """Tests for page illustrations."""

    def test_generate_image(self, client, reader, store, novel):
        response = client.post(f"/api/images/{novel['id']}/page/1", json={"style": "anime"},
                               headers=auth(reader))
        assert response.status_code == 200
        image = response.json()["image"]
        assert image["generation_method"] == "mock"
        assert image["style"] == "anime"
        assert "one two three" in image["prompt"]
        assert image["image_url"].startswith("uploads/images/")
        assert store.get_user(reader.id).reading_stats.images_generated == 1

        served = client.get(f"/{image['image_url']}")
        assert served.status_code == 200
        assert served.content.startswith(b"\x89PNG")

        listed = client.get(f"/api/images/{novel['id']}/page/1", headers=auth(reader))
        assert [i["id"] for i in listed.json()["images"]] == [image["id"]]

    def test_invalid_page(self, client, reader, novel):
        response = client.post(f"/api/images/{novel['id']}/page/7", headers=auth(reader))
        assert response.status_code == 400

    def test_logs_are_admin_only(self, client, reader, admin, novel):
        client.post(f"/api/images/{novel['id']}/page/1", headers=auth(reader))
        assert client.get("/api/images/logs", headers=auth(reader)).status_code == 403

        logs = client.get("/api/images/logs", headers=auth(admin)).json()["logs"]
        assert logs[0]["novel_title"] == "Seven"

    def test_uploads_outside_public_folders(self, client, novel):
        assert client.get("/uploads/novels/anything.txt").status_code == 404


class TestSharingAPI:
    """Tests for shared content."""

    def share(self, client, user, novel, **extra):
        return client.post(f"/api/share/novels/{novel['id']}/passage",
                           json={"content": "one two three", "page": 1, **extra},
                           headers=auth(user))

    def test_share_passage_is_public(self, client, reader, novel):
        response = self.share(client, reader, novel)
        assert response.status_code == 201
        shared = response.json()["shared_content"]
        assert shared["share_url"].endswith(f"/share/{shared['share_id']}")

        public = client.get(f"/api/share/{shared['share_id']}")
        assert public.status_code == 200
        assert public.json()["shared_content"]["novel_title"] == "Seven"

    def test_share_requires_content(self, client, reader, novel):
        response = client.post(f"/api/share/novels/{novel['id']}/passage", json={"page": 1},
                               headers=auth(reader))
        assert response.status_code == 400

    def test_private_share(self, client, reader, novel):
        shared = self.share(client, reader, novel, is_public=False).json()["shared_content"]
        assert client.get(f"/api/share/{shared['share_id']}").status_code == 403
        owner_view = client.get(f"/api/share/{shared['share_id']}", headers=auth(reader))
        assert owner_view.status_code == 200

    def test_expired_share(self, client, reader, store, novel):
        shared = self.share(client, reader, novel).json()["shared_content"]
        record = store.get_share(shared["share_id"])
        record.expires_at = (datetime.now() - timedelta(hours=1)).isoformat()
        store.save_share(record)
        assert client.get(f"/api/share/{shared['share_id']}").status_code == 410

    def test_missing_share(self, client):
        assert client.get("/api/share/doesnotexist").status_code == 404

    def test_share_progress(self, client, reader, novel):
        client.patch(f"/api/novels/{novel['id']}/progress", json={"page": 3},
                     headers=auth(reader))
        response = client.post(f"/api/share/novels/{novel['id']}/progress",
                               headers=auth(reader))
        assert response.status_code == 201
        stats = response.json()["shared_content"]["stats"]
        assert stats["current_page"] == 3
        assert stats["percent_complete"] == 100

    def test_share_with_own_illustration(self, client, reader, novel):
        image = client.post(f"/api/images/{novel['id']}/page/1",
                            headers=auth(reader)).json()["image"]
        shared = self.share(client, reader, novel, image_id=image["id"]).json()["shared_content"]
        assert shared["image_url"] == image["image_url"]

    def test_share_with_foreign_illustration(self, client, reader, store, novel):
        other = add_user(store, email="other@example.com")
        theirs = upload(client, other, title="Theirs").json()["novel"]
        image = client.post(f"/api/images/{theirs['id']}/page/1",
                            headers=auth(other)).json()["image"]

        response = self.share(client, reader, novel, image_id=image["id"])
        assert response.status_code == 400

    def test_social_image(self, client, reader, novel):
        shared = self.share(client, reader, novel).json()["shared_content"]
        response = client.post(f"/api/share/{shared['share_id']}/social-image",
                               headers=auth(reader))
        assert response.status_code == 200
        body = response.json()
        assert body["social_image_url"] == f"uploads/social/social_{shared['share_id']}.png"
        assert client.get(f"/{body['social_image_url']}").status_code == 200

    def test_list_and_delete(self, client, reader, novel):
        shared = self.share(client, reader, novel).json()["shared_content"]
        listed = client.get("/api/share/user/all", headers=auth(reader)).json()
        assert len(listed["shared_content"]) == 1

        response = client.delete(f"/api/share/{shared['share_id']}", headers=auth(reader))
        assert response.status_code == 200
        assert client.get(f"/api/share/{shared['share_id']}").status_code == 404


class TestUsersAPI:
    """Tests for profile, stats and admin user management."""

    def test_profile(self, client, reader, novel):
        response = client.get("/api/users/profile", headers=auth(reader))
        user = response.json()["user"]
        assert user["email"] == "reader@example.com"
        assert "token" not in user
        assert user["stats"]["total_novels"] == 1

    def test_update_profile(self, client, reader):
        response = client.patch("/api/users/profile", json={"name": "Ada", "bio": "Hi"},
                                headers=auth(reader))
        assert response.json()["user"]["name"] == "Ada"
        assert response.json()["user"]["bio"] == "Hi"

    def test_stats(self, client, reader, novel):
        client.patch("/api/users/stats", json={"reading_time": 5, "pages_read": 2},
                     headers=auth(reader))
        body = client.get("/api/users/stats", headers=auth(reader)).json()
        assert body["stats"]["total_reading_time"] == 5
        assert body["stats"]["pages_read"] == 2
        assert body["novels_with_progress"][0]["progress"] == 33

    def test_preferences(self, client, reader):
        response = client.patch("/api/users/preferences",
                                json={"theme": "dark", "dyslexia_friendly": True},
                                headers=auth(reader))
        prefs = response.json()["preferences"]
        assert prefs["theme"] == "dark"
        assert prefs["dyslexia_friendly"] is True
        assert prefs["font_size"] == 18

    def test_list_users_is_admin_only(self, client, reader, admin):
        assert client.get("/api/users/all", headers=auth(reader)).status_code == 403
        users = client.get("/api/users/all", headers=auth(admin)).json()["users"]
        assert {u["email"] for u in users} == {"reader@example.com", "admin@example.com"}
        assert all("token" not in u for u in users)

    def test_admin_deletes_user(self, client, reader, admin, store, novel):
        response = client.delete(f"/api/users/{reader.id}", headers=auth(admin))
        assert response.status_code == 200
        assert store.get_user(reader.id) is None
        assert store.get_novel(novel["id"]) is None
        assert not os.path.exists(novel["file_path"])

    def test_deleting_user_removes_generated_files(self, client, reader, admin, novel, tmp_path):
        shared = client.post(f"/api/share/novels/{novel['id']}/passage",
                             json={"content": "one two three", "page": 1},
                             headers=auth(reader)).json()["shared_content"]
        card_url = client.post(f"/api/share/{shared['share_id']}/social-image",
                               headers=auth(reader)).json()["social_image_url"]
        image_url = client.post(f"/api/images/{novel['id']}/page/1",
                                headers=auth(admin)).json()["image"]["image_url"]
        card_path = tmp_path / card_url
        image_path = tmp_path / image_url
        assert card_path.exists() and image_path.exists()

        client.delete(f"/api/users/{reader.id}", headers=auth(admin))

        assert not card_path.exists()
        assert not image_path.exists()

    def test_delete_missing_user(self, client, admin):
        assert client.delete("/api/users/missing", headers=auth(admin)).status_code == 404
