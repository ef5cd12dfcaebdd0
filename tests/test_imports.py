"""Test module imports and package functionality."""

from __future__ import annotations

import importlib
from types import ModuleType

import pytest

PACKAGES = [
    "fax_dispatch",
    "fax_dispatch.backend",
    "fax_dispatch.core",
    "fax_dispatch.storage",
    "fax_dispatch.types",
    "fax_dispatch.utils",
]

MODULES = [
    "fax_dispatch.__main__",
    "fax_dispatch.errors",
    "fax_dispatch.backend.client",
    "fax_dispatch.backend.simulated",
    "fax_dispatch.core.batch_state",
    "fax_dispatch.core.config",
    "fax_dispatch.core.dispatcher",
    "fax_dispatch.core.events",
    "fax_dispatch.core.gate",
    "fax_dispatch.core.metrics",
    "fax_dispatch.core.monitor",
    "fax_dispatch.core.state_machine",
    "fax_dispatch.core.status",
    "fax_dispatch.core.timing",
    "fax_dispatch.storage.memory",
    "fax_dispatch.storage.records",
    "fax_dispatch.storage.sqlite",
    "fax_dispatch.types.aliases",
    "fax_dispatch.types.models",
    "fax_dispatch.types.protocols",
    "fax_dispatch.utils.formatting",
    "fax_dispatch.utils.logging",
    "fax_dispatch.utils.sanitization",
]


class TestCoreImports:
    """Test that every module can be imported successfully."""

    @pytest.mark.parametrize("name", PACKAGES + MODULES)
    def test_import(self, name: str) -> None:
        module = importlib.import_module(name)
        assert isinstance(module, ModuleType)
        assert module.__name__ == name

    def test_import_from_main_package(self) -> None:
        """Test that the entry point can be imported from the main package."""
        from fax_dispatch import main

        assert callable(main)


class TestPackageAttributes:
    """Test that packages have expected attributes."""

    @pytest.mark.parametrize("name", PACKAGES)
    def test_package_docstrings(self, name: str) -> None:
        module = importlib.import_module(name)
        assert module.__doc__ is not None, f"Module {name} should have a docstring"
        assert module.__doc__.strip(), f"Module {name} docstring should not be empty"

    @pytest.mark.parametrize("name", [p for p in PACKAGES if p != "fax_dispatch.core"])
    def test_package_all_exports(self, name: str) -> None:
        module = importlib.import_module(name)
        exports = getattr(module, "__all__", None)
        assert isinstance(exports, list), f"Module {name} __all__ should be a list"
        for export in exports:
            assert hasattr(module, export), f"{name} lists {export} in __all__ but does not define it"


class TestTestsImports:
    """Test that shared test helpers can be imported."""

    def test_import_fixtures(self) -> None:
        import tests.fixtures.fax_fakes

        assert callable(tests.fixtures.fax_fakes.wait_until)
        assert isinstance(tests.fixtures.fax_fakes.FakeClock(), tests.fixtures.fax_fakes.FakeClock)
