"""
Unit tests for the migration registry and the Migration base class.
"""

import pytest

from dashdb.migration.base_migration import Migration
from dashdb.migration.registry import MigrationRegistry, build_registry


def make_unit(unit_version, unit_name=None):
    class Unit(Migration):
        version = unit_version
        name = unit_name or f"unit_{unit_version}"
        description = "test unit"

        def up(self, conn, ctx):
            pass

    return Unit()


@pytest.mark.unit
class TestMigrationRegistry:
    """Tests for MigrationRegistry."""

    def test_sorted_by_version(self):
        registry = MigrationRegistry([make_unit(3), make_unit(1), make_unit(2)])
        assert [m.version for m in registry] == [1, 2, 3]
        assert registry.latest_version == 3

    def test_duplicate_version_rejected(self):
        with pytest.raises(ValueError, match="Duplicate migration version 2"):
            MigrationRegistry([make_unit(1), make_unit(2), make_unit(2, "other")])

    def test_duplicate_names_allowed(self):
        registry = MigrationRegistry([make_unit(1, "same"), make_unit(2, "same")])
        assert len(registry) == 2

    def test_pending_and_gaps(self):
        registry = MigrationRegistry([make_unit(1), make_unit(5), make_unit(9)])

        assert [m.version for m in registry.pending({1})] == [5, 9]
        assert 5 in registry
        assert 4 not in registry
        assert registry.get(4) is None

    def test_up_to(self):
        registry = MigrationRegistry([make_unit(1), make_unit(2), make_unit(3)])
        assert [m.version for m in registry.up_to(2)] == [1, 2]

    def test_empty_registry(self):
        assert MigrationRegistry([]).latest_version == 0


@pytest.mark.unit
class TestShippedRegistry:
    """Tests for the registry of shipped units."""

    def test_contiguous_versions(self):
        registry = build_registry()
        assert [m.version for m in registry] == list(range(1, 17))

    def test_names_unique_and_described(self):
        registry = build_registry()
        names = [m.name for m in registry]

        assert len(set(names)) == len(names)
        assert all(m.description for m in registry)

    def test_forward_only_units(self):
        """Data-rewriting units have no rollback."""
        registry = build_registry()
        assert not registry.get(8).supports_rollback
        assert registry.get(1).supports_rollback


@pytest.mark.unit
class TestMigrationBase:
    """Tests for Migration attribute validation."""

    def test_missing_version(self):
        class NoVersion(Migration):
            name = "x"
            description = "x"

            def up(self, conn, ctx):
                pass

        with pytest.raises(ValueError, match="positive integer"):
            NoVersion()

    def test_non_positive_version(self):
        with pytest.raises(ValueError):
            make_unit(0)

    def test_default_down_raises(self):
        unit = make_unit(1)
        assert not unit.supports_rollback
        with pytest.raises(NotImplementedError, match="restore from backup"):
            unit.down(None, None)

    def test_str(self):
        assert str(make_unit(7, "seven")) == "Migration007: seven (test unit)"
