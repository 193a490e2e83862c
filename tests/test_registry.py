"""Tests for safe_upgrade.registry."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from safe_upgrade.registry import (
    RegistryClient,
    RegistryError,
    detect_custom_registry,
    packument_url,
)


def mock_session(payload: Any = None, error: Exception | None = None) -> MagicMock:
    response = MagicMock()
    response.__enter__.return_value = response
    response.json.return_value = payload
    if error is not None:
        response.raise_for_status.side_effect = error
    session = MagicMock()
    session.get.return_value = response
    return session


PACKUMENT = {
    "name": "lodash",
    "versions": {
        "4.17.20": {"name": "lodash"},
        "4.17.21": {"name": "lodash"},
        "4.17.22": {"name": "lodash", "deprecated": "broken release"},
        "4.17.23": {"name": "lodash"},
    },
}


class TestPackumentUrl:
    def test_plain_name(self) -> None:
        assert packument_url("https://registry.npmjs.org", "lodash") == (
            "https://registry.npmjs.org/lodash"
        )

    def test_scoped_name(self) -> None:
        assert packument_url("https://registry.npmjs.org/", "@types/node") == (
            "https://registry.npmjs.org/@types%2fnode"
        )


class TestRegistryClient:
    def test_filters_deprecated_versions(self) -> None:
        client = RegistryClient(session=mock_session(PACKUMENT))
        assert client.fetch_versions("lodash") == ["4.17.20", "4.17.21", "4.17.23"]

    def test_requests_packument_with_timeout(self) -> None:
        session = mock_session(PACKUMENT)
        RegistryClient(timeout=5, session=session).fetch_versions("lodash")
        session.get.assert_called_once_with(
            "https://registry.npmjs.org/lodash",
            timeout=5,
            headers={"Accept": "application/json"},
        )

    def test_results_are_cached(self) -> None:
        session = mock_session(PACKUMENT)
        client = RegistryClient(session=session)
        first = client.fetch_versions("lodash")
        first.append("mutated")
        assert client.fetch_versions("lodash") == ["4.17.20", "4.17.21", "4.17.23"]
        assert session.get.call_count == 1

    def test_http_error(self) -> None:
        session = mock_session(error=requests.HTTPError("404 Client Error: Not Found"))
        with pytest.raises(RegistryError, match="Failed to fetch left-pad"):
            RegistryClient(session=session).fetch_versions("left-pad")

    def test_connection_error(self) -> None:
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("unreachable")
        with pytest.raises(RegistryError):
            RegistryClient(session=session).fetch_versions("lodash")

    def test_invalid_json(self) -> None:
        session = mock_session()
        session.get.return_value.json.side_effect = ValueError("Expecting value")
        with pytest.raises(RegistryError, match="Invalid registry response"):
            RegistryClient(session=session).fetch_versions("lodash")

    def test_missing_versions(self) -> None:
        with pytest.raises(RegistryError, match="has no versions"):
            RegistryClient(session=mock_session({"error": "not found"})).fetch_versions("x")


class TestDetectCustomRegistry:
    def test_no_npmrc(self, tmp_path: Path) -> None:
        assert detect_custom_registry(tmp_path) is None

    def test_default_registry(self, tmp_path: Path) -> None:
        (tmp_path / ".npmrc").write_text("registry=https://registry.npmjs.org/\n")
        assert detect_custom_registry(tmp_path) is None

    def test_custom_registry(self, tmp_path: Path) -> None:
        (tmp_path / ".npmrc").write_text(
            "save-exact=true\nregistry = https://npm.corp.example/\n"
        )
        assert detect_custom_registry(tmp_path) == (
            "custom registry https://npm.corp.example/ detected, "
            "using https://registry.npmjs.org/ instead"
        )

    def test_scoped_registry_lines_are_ignored(self, tmp_path: Path) -> None:
        (tmp_path / ".npmrc").write_text("@corp:registry=https://npm.corp.example/\n")
        assert detect_custom_registry(tmp_path) is None

    def test_undecodable_npmrc_is_ignored(self, tmp_path: Path) -> None:
        (tmp_path / ".npmrc").write_bytes(b"registry=https://r.example/\n\xff\xfe\n")
        assert detect_custom_registry(tmp_path) is None

    def test_unreadable_npmrc_is_ignored(self, tmp_path: Path) -> None:
        (tmp_path / ".npmrc").mkdir()
        assert detect_custom_registry(tmp_path) is None

    def test_matches_active_registry(self, tmp_path: Path) -> None:
        (tmp_path / ".npmrc").write_text("registry=https://npm.corp.example\n")
        assert detect_custom_registry(tmp_path, "https://npm.corp.example/") is None
