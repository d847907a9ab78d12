"""Tests for the document store and vault loading."""

import pytest

from vault_mcp.engine.models import Fingerprint, OutlineTree
from vault_mcp.engine.store import DocumentStore, load_vault


class TestDocumentStore:
    def test_upsert_and_get(self):
        store = DocumentStore()
        fp = Fingerprint("abc", 1, 2)
        doc = store.upsert("a.org", "* A\n", fp, tree=OutlineTree(format="org"))
        assert store.get("a.org") is doc
        assert "a.org" in store
        assert len(store) == 1
        assert doc.is_valid

    def test_get_missing(self):
        assert DocumentStore().get("missing.org") is None

    def test_upsert_replaces(self):
        store = DocumentStore()
        store.upsert("a.org", "old", None, error="broken")
        store.upsert("a.org", "new", None, tree=OutlineTree(format="org"))
        assert store.get("a.org").raw_text == "new"
        assert store.invalid() == []

    def test_listing_is_sorted(self):
        store = DocumentStore()
        for path in ("c.org", "a.org", "b.md"):
            store.upsert(path, "", None, tree=OutlineTree(format="org"))
        assert store.paths() == ["a.org", "b.md", "c.org"]
        assert [d.path for d in store.documents()] == ["a.org", "b.md", "c.org"]

    def test_invalid_and_dirty(self):
        store = DocumentStore()
        store.upsert("bad.org", "x", None, error="parse error")
        store.upsert("new.org", "* A\n", None, tree=OutlineTree(format="org"), dirty=True)
        assert [d.path for d in store.invalid()] == ["bad.org"]
        assert [d.path for d in store.dirty()] == ["new.org"]

    def test_remove(self):
        store = DocumentStore()
        store.upsert("a.org", "", None)
        assert store.remove("a.org").path == "a.org"
        assert store.remove("a.org") is None


class TestLoadVault:
    def test_discovers_documents(self, vault_root):
        vault = load_vault(vault_root)
        assert [f.relative_path for f in vault.discovered] == ["inbox.org", "notes/reading.md"]
        assert len(vault.store) == 0
        assert len(vault.index) == 0

    def test_missing_root(self, tmp_path):
        with pytest.raises(ValueError, match="does not exist"):
            load_vault(tmp_path / "nope")
