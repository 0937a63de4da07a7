"""Tests for the user administration CLI."""

import pytest

from library import LibraryStore
from manage_users import create_user, main, make_admin, rotate_token


class TestManageUsers:
    """Tests for account commands."""

    def test_create_prints_token(self, tmp_path, capsys):
        assert main(["--data-dir", str(tmp_path), "create", "Ada", "ada@example.com"]) == 0
        user = LibraryStore(str(tmp_path)).get_user_by_email("ada@example.com")
        assert user.token in capsys.readouterr().out
        assert user.role == "user"

    def test_duplicate_email_fails(self, tmp_path, capsys):
        main(["--data-dir", str(tmp_path), "create", "Ada", "ada@example.com"])
        assert main(["--data-dir", str(tmp_path), "create", "Ada", "ADA@example.com"]) == 1
        assert "already exists" in capsys.readouterr().err

    def test_make_admin(self, tmp_path):
        store = LibraryStore(str(tmp_path))
        create_user(store, "Ada", "ada@example.com")
        assert make_admin(store, "ada@example.com").is_admin

    def test_rotate_token(self, tmp_path):
        store = LibraryStore(str(tmp_path))
        old = create_user(store, "Ada", "ada@example.com").token
        assert rotate_token(store, "ada@example.com").token != old
        assert store.get_user_by_token(old) is None

    def test_unknown_email(self, tmp_path):
        with pytest.raises(ValueError):
            make_admin(LibraryStore(str(tmp_path)), "nobody@example.com")
