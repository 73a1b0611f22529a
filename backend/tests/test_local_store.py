"""
Tests for local filesystem storage.
"""
import pytest

from jobtracker.storage.local_store import LocalFileStore, safe_filename


class TestSafeFilename:
    """Tests for filename sanitizing."""

    def test_keeps_plain_name(self):
        assert safe_filename("resume.pdf") == "resume.pdf"

    def test_strips_directories(self):
        assert safe_filename("../../etc/passwd") == "passwd"
        assert safe_filename("C:\\Users\\me\\cover letter.docx") == "cover letter.docx"

    @pytest.mark.parametrize("filename", ["", ".", "..", "dir/", None])
    def test_rejects_unusable_names(self, filename):
        with pytest.raises(ValueError):
            safe_filename(filename)


class TestLocalFileStore:
    """Tests for LocalFileStore."""

    def test_save_writes_file_and_returns_locator(self, uploads_dir):
        store = LocalFileStore(str(uploads_dir))

        stored = store.save("resume.pdf", b"%PDF-1.4 abc")

        assert stored.url == "/uploads/resume.pdf"
        assert stored.storage_key == "uploads/resume.pdf"
        assert stored.size == 12
        assert (uploads_dir / "resume.pdf").read_bytes() == b"%PDF-1.4 abc"

    def test_custom_url_prefix(self, uploads_dir):
        store = LocalFileStore(str(uploads_dir), url_prefix="files/")

        stored = store.save("a.txt", b"x")

        assert stored.url == "/files/a.txt"
        assert stored.storage_key == "files/a.txt"

    def test_owns_url_and_key(self, uploads_dir):
        store = LocalFileStore(str(uploads_dir))

        assert store.owns_url("/uploads/resume.pdf")
        assert not store.owns_url("https://cdn.example.com/uploads/resume.pdf")
        assert not store.owns_url(None)
        assert store.owns_key("uploads/resume.pdf")
        assert not store.owns_key("attachments/abc/resume.pdf")

    def test_resolve_rejects_traversal(self, uploads_dir):
        store = LocalFileStore(str(uploads_dir))

        assert store.resolve(url="/uploads/../secret.txt") is None
        assert store.resolve(storage_key="uploads/../../secret.txt") is None

    def test_delete(self, uploads_dir):
        store = LocalFileStore(str(uploads_dir))
        store.save("resume.pdf", b"data")

        assert store.delete(url="/uploads/resume.pdf") is True
        assert not (uploads_dir / "resume.pdf").exists()
        # nothing left to delete
        assert store.delete(url="/uploads/resume.pdf") is False

    def test_delete_ignores_foreign_urls(self, uploads_dir):
        store = LocalFileStore(str(uploads_dir))

        assert store.delete(url="https://cdn.example.com/resume.pdf") is False
