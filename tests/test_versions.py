"""Tests for safe_upgrade.versions."""

from __future__ import annotations

import pytest

from safe_upgrade.errors import InvalidVersion
from safe_upgrade.models import Sign
from safe_upgrade.versions import (
    bump_preserving_sign,
    clean,
    is_newer,
    is_stable,
    parse_sign,
    parse_version,
    sort_descending_stable,
)


class TestParseVersion:
    def test_full_semver(self) -> None:
        v = parse_version("1.2.3")
        assert (v.major, v.minor, v.patch) == (1, 2, 3)

    def test_two_part_version(self) -> None:
        v = parse_version("1.2")
        assert (v.major, v.minor, v.patch) == (1, 2, 0)

    def test_single_part_version(self) -> None:
        v = parse_version("5")
        assert (v.major, v.minor, v.patch) == (5, 0, 0)

    def test_keeps_prerelease(self) -> None:
        assert parse_version("1.2.3-beta.1").prerelease == "beta.1"

    def test_rejects_garbage(self) -> None:
        with pytest.raises(InvalidVersion):
            parse_version("not-a-version")


class TestClean:
    def test_strips_v_prefix(self) -> None:
        assert clean("v1.2.3") == "1.2.3"

    def test_strips_equals_and_whitespace(self) -> None:
        assert clean(" =1.2.3 ") == "1.2.3"

    def test_rejects_partial_version(self) -> None:
        with pytest.raises(InvalidVersion):
            clean("1.2")

    def test_invalid_version_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            clean("latest")


class TestIsStableAndNewer:
    def test_release_is_stable(self) -> None:
        assert is_stable("4.17.21")

    def test_prerelease_is_not_stable(self) -> None:
        assert not is_stable("5.0.0-rc.1")

    def test_invalid_is_not_stable(self) -> None:
        assert not is_stable("4.x")

    def test_newer(self) -> None:
        assert is_newer("4.17.21", "4.17.20")
        assert is_newer("4.10.0", "4.9.9")

    def test_equal_is_not_newer(self) -> None:
        assert not is_newer("1.0.0", "1.0.0")

    def test_build_metadata_does_not_count(self) -> None:
        assert not is_newer("1.0.0+build.5", "1.0.0")

    def test_release_is_newer_than_its_prerelease(self) -> None:
        assert is_newer("1.0.0", "1.0.0-beta")

    def test_invalid_is_never_newer(self) -> None:
        assert not is_newer("banana", "1.0.0")
        assert not is_newer("1.0.0", ">=1 <2")


class TestSortDescendingStable:
    def test_sorts_newest_first(self) -> None:
        assert sort_descending_stable(["1.0.0", "1.10.0", "1.2.0"]) == [
            "1.10.0",
            "1.2.0",
            "1.0.0",
        ]

    def test_drops_prereleases_and_invalid(self) -> None:
        versions = ["1.0.0", "2.0.0-beta.1", "not-a-version", "1.1.0"]
        assert sort_descending_stable(versions) == ["1.1.0", "1.0.0"]

    def test_ties_keep_input_order(self) -> None:
        assert sort_descending_stable(["1.0.0+b", "1.0.0", "1.0.0+a"]) == [
            "1.0.0+b",
            "1.0.0",
            "1.0.0+a",
        ]

    @pytest.mark.parametrize(
        "versions",
        [
            [],
            ["3.0.0", "1.0.0", "2.0.0"],
            ["1.0.0+b", "0.9.0", "1.0.0", "1.0.0-rc.1", "x"],
            ["4.17.21", "4.17.23", "4.17.22", "4.17.20"],
        ],
    )
    def test_idempotent(self, versions: list[str]) -> None:
        once = sort_descending_stable(versions)
        assert sort_descending_stable(once) == once

    def test_does_not_mutate_input(self) -> None:
        versions = ["1.0.0", "2.0.0"]
        sort_descending_stable(versions)
        assert versions == ["1.0.0", "2.0.0"]


class TestParseSign:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("^4.17.20", (Sign.CARET, "4.17.20")),
            ("~1.2.3", (Sign.TILDE, "1.2.3")),
            ("1.2.3", (Sign.EXACT, "1.2.3")),
        ],
    )
    def test_simple_values(self, value: str, expected: tuple[Sign, str]) -> None:
        assert parse_sign(value) == expected

    @pytest.mark.parametrize(
        "value",
        [">=1.2.3 <2.0.0", ">=1.0.0", "<2", "=1.2.3", "*", "latest", "next", "^1.0.0 || ^2.0.0"],
    )
    def test_complex_ranges_are_opaque(self, value: str) -> None:
        assert parse_sign(value) == (Sign.EXACT, value)

    def test_bare_version_never_carries_sign(self) -> None:
        for value in ("^1.0.0", "~1.0.0"):
            _, bare = parse_sign(value)
            assert not bare.startswith(("^", "~"))


class TestBumpPreservingSign:
    def test_caret(self) -> None:
        assert bump_preserving_sign("^4.17.20", "4.17.21") == "^4.17.21"

    def test_tilde_with_v_prefix(self) -> None:
        assert bump_preserving_sign("~1.2.3", "v1.3.0") == "~1.3.0"

    def test_exact(self) -> None:
        assert bump_preserving_sign("1.2.3", "2.0.0") == "2.0.0"

    @pytest.mark.parametrize("current", ["^1.2.3", "~1.2.3", "1.2.3"])
    @pytest.mark.parametrize("candidate", ["1.2.4", "2.0.0", "v10.0.1", "1.3.0+build.1"])
    def test_sign_is_preserved(self, current: str, candidate: str) -> None:
        bumped = bump_preserving_sign(current, candidate)
        sign = current[0] if current[0] in "^~" else ""
        assert bumped == sign + clean(candidate)
        assert bumped[:1].isdigit() == (sign == "")

    def test_invalid_candidate(self) -> None:
        with pytest.raises(InvalidVersion):
            bump_preserving_sign("^1.0.0", "latest")
