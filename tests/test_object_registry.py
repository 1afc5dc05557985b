"""Tests for the SQLite object registry."""

import threading

from dealdocs.services.object_registry import ObjectRegistry, get_object_registry


class TestObjectRegistry:
    """Tests for ObjectRegistry."""

    def test_register_and_get(self) -> None:
        registry = ObjectRegistry()
        entry = registry.register_object(
            "uploads/abc/a.pdf", "a.pdf", size=10, mime_type="application/pdf",
            relative_path="deal/a.pdf",
        )

        assert entry["objectPath"] == "uploads/abc/a.pdf"
        assert entry["relativePath"] == "deal/a.pdf"
        assert entry["storage"] == "s3"
        assert entry["createdAt"]
        assert registry.get_object("uploads/abc/a.pdf") == entry

    def test_relative_path_defaults_to_filename(self) -> None:
        entry = ObjectRegistry().register_object("uploads/x/b.txt", "b.txt")
        assert entry["relativePath"] == "b.txt"

    def test_register_twice_keeps_one_row(self) -> None:
        registry = ObjectRegistry()
        registry.register_object("uploads/x/a.pdf", "a.pdf", size=1)
        registry.register_object("uploads/x/a.pdf", "a.pdf", size=2)

        assert registry.get_object("uploads/x/a.pdf")["size"] == 2
        assert registry.get_stats()["total_objects"] == 1

    def test_missing_object(self) -> None:
        assert ObjectRegistry().get_object("nope") is None

    def test_list_and_paginate(self) -> None:
        registry = ObjectRegistry()
        for i in range(5):
            registry.register_object(f"uploads/{i}.txt", f"{i}.txt")

        assert len(registry.list_objects()) == 5
        page = registry.list_objects(limit=2, offset=1)
        assert len(page) == 2

    def test_delete(self) -> None:
        registry = ObjectRegistry()
        registry.register_object("uploads/a.txt", "a.txt")

        assert registry.delete_object("uploads/a.txt") is True
        assert registry.delete_object("uploads/a.txt") is False
        assert registry.get_object("uploads/a.txt") is None

    def test_stats_by_storage(self) -> None:
        registry = ObjectRegistry()
        registry.register_object("uploads/a.txt", "a.txt", size=10)
        registry.register_object("/uploads/b.txt", "b.txt", size=5, storage="local")

        stats = registry.get_stats()
        assert stats["total_objects"] == 2
        assert stats["total_bytes"] == 15
        assert stats["by_storage"] == {"s3": 1, "local": 1}

    def test_empty_stats(self) -> None:
        stats = ObjectRegistry().get_stats()
        assert stats["total_objects"] == 0
        assert stats["total_bytes"] == 0
        assert stats["oldest_entry"] is None

    def test_concurrent_registration(self) -> None:
        registry = ObjectRegistry()

        def register(i: int) -> None:
            registry.register_object(f"uploads/{i}.txt", f"{i}.txt", size=1)

        threads = [threading.Thread(target=register, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert registry.get_stats()["total_objects"] == 10


def test_singleton() -> None:
    assert get_object_registry() is get_object_registry()
