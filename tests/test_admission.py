"""Tests for the admission filter."""

from pathlib import Path

import pytest

from dealdocs.services.admission import AdmissionPolicy, admit, is_allowed_type
from dealdocs.services.collector import FileCandidate, from_file_selection
from dealdocs.services.models import ItemStatus, SourceFile

MB = 1024 * 1024


def _candidate(name: str, size: int, mime_type: str = "text/plain") -> FileCandidate:
    return FileCandidate(SourceFile(f"/data/{name}", name, size, mime_type), name)


class TestIsAllowedType:
    """Tests for the type allow-list predicate."""

    def test_empty_list_allows_everything(self) -> None:
        assert is_allowed_type("anything.bin", "", []) is True

    def test_exact_mime_match(self) -> None:
        assert is_allowed_type("a.pdf", "application/pdf", ["application/pdf"]) is True
        assert is_allowed_type("a.txt", "text/plain", ["application/pdf"]) is False

    def test_wildcard_mime_prefix(self) -> None:
        assert is_allowed_type("photo.png", "image/png", ["image/*"]) is True
        assert is_allowed_type("clip.mp4", "video/mp4", ["image/*"]) is False

    def test_extension_fallback_without_mime(self) -> None:
        """Extension entries match case-insensitively with or without a dot."""
        assert is_allowed_type("Model.XLSX", "", [".xlsx"]) is True
        assert is_allowed_type("model.xlsx", "", ["xlsx"]) is True
        assert is_allowed_type("model.xlsx.bak", "", [".xlsx"]) is False

    def test_extension_needs_a_dot(self) -> None:
        assert is_allowed_type("notpdf", "", ["pdf"]) is False


class TestAdmit:
    """Tests for admit()."""

    def test_admits_within_limits(self) -> None:
        """Test that admitted items start pending and keep their paths."""
        result = admit([_candidate("a.txt", 10), _candidate("b.txt", 20)], 0, AdmissionPolicy())

        assert len(result.admitted) == 2
        assert result.notices == []
        assert all(item.status == ItemStatus.PENDING for item in result.admitted)
        assert [item.relative_path for item in result.admitted] == ["a.txt", "b.txt"]

    def test_oversized_file_rejected(self) -> None:
        """A 600MB file against a 500MB limit never joins the batch."""
        policy = AdmissionPolicy(max_file_size=500 * MB)
        result = admit([_candidate("huge.zip", 600 * MB, "application/zip")], 0, policy)

        assert result.admitted == []
        assert len(result.notices) == 1
        notice = result.notices[0]
        assert notice.kind == "size"
        assert notice.filename == "huge.zip"
        assert "500.0 MB" in notice.message

    def test_disallowed_type_rejected(self) -> None:
        policy = AdmissionPolicy(allowed_file_types=("application/pdf",))
        result = admit(
            [_candidate("a.pdf", 10, "application/pdf"), _candidate("b.txt", 10)], 0, policy
        )

        assert [item.filename for item in result.admitted] == ["a.pdf"]
        assert [n.kind for n in result.notices] == ["type"]

    def test_capacity_truncates_to_prefix(self) -> None:
        """Only the first free slots are considered, with one capacity notice."""
        policy = AdmissionPolicy(max_number_of_files=3)
        candidates = [_candidate(f"f{i}.txt", 1) for i in range(5)]
        result = admit(candidates, 1, policy)

        assert [item.filename for item in result.admitted] == ["f0.txt", "f1.txt"]
        capacity = [n for n in result.notices if n.kind == "capacity"]
        assert len(capacity) == 1
        assert capacity[0].message == "Maximum of 3 files allowed"

    def test_full_batch_admits_nothing(self) -> None:
        policy = AdmissionPolicy(max_number_of_files=2)
        result = admit([_candidate("a.txt", 1)], 2, policy)

        assert result.admitted == []
        assert [n.kind for n in result.notices] == ["capacity"]

    def test_rejected_files_inside_capacity_do_not_free_slots(self) -> None:
        """Files dropped for size still use up their place in the considered prefix."""
        policy = AdmissionPolicy(max_number_of_files=2, max_file_size=100)
        candidates = [_candidate("big.txt", 500), _candidate("ok.txt", 10), _candidate("late.txt", 10)]
        result = admit(candidates, 0, policy)

        assert [item.filename for item in result.admitted] == ["ok.txt"]
        assert sorted(n.kind for n in result.notices) == ["capacity", "size"]

    def test_admitted_count_never_exceeds_limit(self, make_files) -> None:
        paths = make_files(12)
        policy = AdmissionPolicy(max_number_of_files=10)
        result = admit(from_file_selection(paths), 0, policy)

        assert len(result.admitted) == 10
        assert all(item.source.size <= policy.max_file_size for item in result.admitted)


class TestAdmissionPolicy:
    """Tests for policy parsing."""

    def test_from_dict_overrides_defaults(self) -> None:
        base = AdmissionPolicy(max_number_of_files=5, max_file_size=1000)
        policy = AdmissionPolicy.from_dict({"maxFileSize": 50, "allowedFileTypes": ["image/*"]}, base)

        assert policy.max_number_of_files == 5
        assert policy.max_file_size == 50
        assert policy.allowed_file_types == ("image/*",)

    def test_from_dict_none_uses_defaults(self) -> None:
        assert AdmissionPolicy.from_dict(None) == AdmissionPolicy()

    def test_from_dict_rejects_non_positive(self) -> None:
        with pytest.raises(ValueError):
            AdmissionPolicy.from_dict({"maxNumberOfFiles": 0})

    def test_to_dict(self) -> None:
        data = AdmissionPolicy(max_file_size=500 * MB).to_dict()
        assert data["maxFileSize"] == 500 * MB
        assert data["maxFileSizeFormatted"] == "500.0 MB"
        assert data["allowedFileTypes"] == []


def test_admitted_items_get_unique_ids(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("a")
    (tmp_path / "b.txt").write_text("b")
    result = admit(from_file_selection([tmp_path / "a.txt", tmp_path / "b.txt"]), 0, AdmissionPolicy())
    assert len({item.id for item in result.admitted}) == 2
