import os
from datetime import UTC, datetime

import pytest

from imageflow.domain.errors import NotFoundError, ValidationError
from imageflow.infrastructure.storage.base import with_extension


def test_save_read_and_url(storage):
    stored = storage.save(b"abc", "u/img/v1_cat", "image/png")
    assert stored.name == "u/img/v1_cat.png"
    assert stored.size == 3
    assert stored.url == "http://testserver/api/uploads/u/img/v1_cat.png"
    assert storage.read(stored.name) == b"abc"
    assert storage.exists(stored.name)


def test_file_url_is_stable(storage):
    assert storage.get_file_url("u/a.png") == storage.get_file_url("u/a.png")
    assert storage.resolve_url("u/a.png") == storage.get_file_url("u/a.png")


def test_read_missing_raises_not_found(storage):
    with pytest.raises(NotFoundError):
        storage.read("u/missing.png")


def test_delete_never_raises(storage):
    storage.delete("u/missing.png")
    stored = storage.save(b"x", "u/a.png", "image/png")
    storage.delete(stored.name)
    assert not storage.exists(stored.name)


def test_names_cannot_escape_the_root(storage):
    with pytest.raises(ValidationError):
        storage.save(b"x", "../outside.png", "image/png")
    assert storage.exists("../outside.png") is False


def test_list_names_is_recursive(storage):
    storage.save(b"1", "u/b.png", "image/png")
    storage.save(b"2", "u/img/a.jpg", "image/jpeg")
    assert storage.list_names() == ["u/b.png", "u/img/a.jpg"]


def test_with_extension():
    assert with_extension("u/a", "image/webp") == "u/a.webp"
    assert with_extension("u/a.png", "image/jpeg") == "u/a.png"
    assert with_extension("u.v/a", "application/x-unknown") == "u.v/a.jpg"


def test_url_escapes_reserved_characters(storage):
    stored = storage.save(b"x", "u/img_shot#1 50%?.png", "image/png")
    assert stored.url == "http://testserver/api/uploads/u/img_shot%231%2050%25%3F.png"


def test_modified_at(storage):
    stored = storage.save(b"x", "u/a.png", "image/png")
    os.utime(storage.root / stored.name, (1714521600, 1714521600))
    assert storage.modified_at(stored.name) == datetime(2024, 5, 1, tzinfo=UTC)
    assert storage.modified_at("u/missing.png") is None
