"""Shared test fixtures."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

SAMPLE_MANIFEST: dict[str, Any] = {
    "name": "demo-app",
    "version": "1.0.0",
    "private": True,
    "scripts": {"test": "jest", "build": "tsc", "lint": "eslint ."},
    "dependencies": {"lodash": "^4.17.20", "express": "~4.18.0"},
    "devDependencies": {"typescript": "5.3.3"},
    "peerDependencies": {"react": ">=17"},
}


def write_manifest(project_dir: Path, doc: dict[str, Any], indent: int | str = 2) -> Path:
    path = project_dir / "package.json"
    path.write_text(json.dumps(doc, indent=indent) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A project directory holding the sample package.json."""
    write_manifest(tmp_path, SAMPLE_MANIFEST)
    return tmp_path


@pytest.fixture
def tmp_manifest(project_dir: Path) -> Path:
    """Path of the sample package.json."""
    return project_dir / "package.json"
