"""Shared fixtures for vaultmcp tests."""

import os
from pathlib import Path

import pytest

from vault_mcp.config import Config, reset_config

INBOX_ORG = """\
#+title: Inbox
#+filetags: :home:

* TODO Buy milk :errand:
:PROPERTIES:
:ID: milk
:END:
Semi-skimmed.
* Projects
:PROPERTIES:
:ID: projects
:END:
** TODO Write report :work:
SCHEDULED: <2026-01-15 Thu>
:PROPERTIES:
:ID: report
:END:
** DONE Book flights
:PROPERTIES:
:ID: flights
:END:
"""

NOTES_MD = """\
---
title: Notes
tags: [reading]
---
Intro paragraph.

# TODO Read paper
:PROPERTIES:
:ID: paper
:END:
```
# not a heading
```
"""


@pytest.fixture(autouse=True)
def _reset_global_config(monkeypatch):
    for name in list(os.environ):
        if name.startswith("VAULT_"):
            monkeypatch.delenv(name)
    reset_config()
    yield
    reset_config()


def _make_config(vault_root: Path, **overrides) -> Config:
    values = dict(
        vault_root=vault_root,
        vault_port=8080,
        vault_cache=vault_root / ".vault" / "snapshot.bin",
        debounce_ms=50,
        pending_write_timeout=5.0,
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def vault_root(tmp_path) -> Path:
    """A vault with one org and one markdown document, all ids assigned."""
    root = tmp_path / "vault"
    root.mkdir()
    (root / "inbox.org").write_text(INBOX_ORG)
    (root / "notes").mkdir()
    (root / "notes" / "reading.md").write_text(NOTES_MD)
    return root


@pytest.fixture
def config_factory():
    """Build a Config for a temporary vault with short timings."""
    return _make_config


@pytest.fixture
def config(vault_root) -> Config:
    return _make_config(vault_root)
