"""Tests for space estimation and the space gate."""

from pathlib import Path

import pytest

from autoiso.build_state import Stage
from autoiso.errors import InsufficientSpace
from autoiso.lib import space
from autoiso.lib.space import (
    GIB,
    SAFETY_MARGIN,
    WORKING_SPACE,
    check_available,
    estimate_source_size,
    first_field,
    parse_int,
    plan_required_space,
    required_space,
    write_space_analysis,
)


class TestParsing:
    """Tests for du output parsing."""

    def test_parse_int(self):
        """Only plain non-negative integers parse."""
        assert parse_int(" 123\n") == 123
        assert parse_int("12a") is None
        assert parse_int("-5") is None
        assert parse_int("") is None
        assert parse_int(None) is None

    def test_first_field_takes_last_line(self):
        """du prints warnings before the total; the last line wins."""
        assert first_field("du: cannot read x\n4096\t/\n") == 4096
        assert first_field("") is None


class TestRequiredSpace:
    """Tests for per-stage and whole-build requirements."""

    def test_stage_factors(self):
        """Each writing stage has its own factor and overhead."""
        est = 10 * GIB
        assert required_space(Stage.SYSTEM_COPY, est) == int(est * 1.1) + 2 * GIB
        assert required_space(Stage.SQUASHFS, est) == int(est * 0.5) + GIB
        assert required_space(Stage.ISO_CREATION, est) == int(est * 0.1) + 2 * GIB
        assert required_space(Stage.BOOTLOADER, est) == 0

    def test_plan_respects_minimum(self):
        """Small systems still need the configured minimum."""
        assert plan_required_space(GIB, min_space_gb=20) == 20 * GIB

    def test_plan_sums_stages(self):
        """Large systems need every stage plus working space and margin."""
        est = 40 * GIB
        expected = sum(required_space(s, est) for s in Stage) + WORKING_SPACE + SAFETY_MARGIN
        assert plan_required_space(est, min_space_gb=1) == expected

    def test_kali_needs_more(self):
        """Kali plans extra room for tool growth."""
        est = 40 * GIB
        assert plan_required_space(est, min_space_gb=1, distribution="kali") > plan_required_space(est, min_space_gb=1)


class TestCheckAvailable:
    """Tests for the space gate boundary."""

    def test_equal_is_enough(self, monkeypatch):
        """available == required passes."""
        monkeypatch.setattr(space, "available_space", lambda path: 100)
        assert check_available("/w", 100) == 100

    def test_one_byte_short_fails(self, monkeypatch):
        """available < required raises with both numbers."""
        monkeypatch.setattr(space, "available_space", lambda path: 99)
        with pytest.raises(InsufficientSpace) as exc:
            check_available("/w", 100)
        assert exc.value.required == 100
        assert exc.value.available == 99
        assert exc.value.hint

    def test_unknown_fails(self, monkeypatch):
        """Unknown free space is treated as insufficient."""
        monkeypatch.setattr(space, "available_space", lambda path: None)
        with pytest.raises(InsufficientSpace):
            check_available("/w", 1)

    def test_missing_path_uses_parent(self, tmp_path: Path):
        """A work dir that does not exist yet is measured on its parent."""
        assert space.available_space(str(tmp_path / "not" / "yet")) is not None


class TestEstimateSourceSize:
    """Tests for the du / usage / fallback chain."""

    def test_du_result_used(self, monkeypatch):
        """du output in KiB is converted to bytes."""
        monkeypatch.setattr(space, "_du_kib", lambda argv, timeout: 1024)
        assert estimate_source_size([], timeout=1) == 1024 * 1024

    def test_falls_back_to_usage(self, monkeypatch):
        """Without du, filesystem usage minus a cache allowance is used."""
        monkeypatch.setattr(space, "_du_kib", lambda argv, timeout: None)
        monkeypatch.setattr(space, "used_bytes", lambda root: 10 * GIB)
        assert estimate_source_size([], timeout=1) == 8 * GIB

    def test_falls_back_to_constant(self, monkeypatch):
        """With nothing measurable, the distribution default applies."""
        monkeypatch.setattr(space, "_du_kib", lambda argv, timeout: None)
        monkeypatch.setattr(space, "used_bytes", lambda root: None)
        assert estimate_source_size([], timeout=1) == 15 * GIB
        assert estimate_source_size([], timeout=1, distribution="kali") == 20 * GIB

    def test_du_gets_excludes(self, monkeypatch):
        """The exclusion set is passed to du."""
        seen = {}

        def fake(argv, timeout):
            seen["argv"] = argv
            return 1

        monkeypatch.setattr(space, "_du_kib", fake)
        estimate_source_size(["/proc", "/home"], timeout=5)
        assert "--exclude=/home" in seen["argv"]
        assert "--exclude=/proc" in seen["argv"]
        assert seen["argv"][-1] == "/"


def test_write_space_analysis(tmp_path: Path):
    """The analysis file records the three numbers."""
    out = tmp_path / "w" / ".space_analysis"
    write_space_analysis(out, source_estimate=1, required=2, available=3)
    text = out.read_text(encoding="utf-8")
    assert "SYSTEM_SIZE_BYTES=1" in text
    assert "REQUIRED_SPACE_BYTES=2" in text
    assert "AVAILABLE_SPACE_BYTES=3" in text
