"""Shared fixtures for the ESM test suite."""

from __future__ import annotations

import logging

import pytest

from esm.config import EffectiveConfig
from esm.logger import ESMLogger


@pytest.fixture(autouse=True)
def reset_esm_logging():
    yield
    ESMLogger.reset()
    logging.getLogger("esm").propagate = True


@pytest.fixture()
def base_config() -> EffectiveConfig:
    return EffectiveConfig(instance_id="test-instance")


@pytest.fixture()
def write_file(tmp_path):
    """Write ``content`` to ``tmp_path / name`` and return the path as a string."""

    def _write(name: str, content: str) -> str:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return str(path)

    return _write
