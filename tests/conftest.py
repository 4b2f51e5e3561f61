from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from provctl.core.config_loader import ProvisioningConfig


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., ProvisioningConfig]:
    base = ProvisioningConfig(
        product_id=1234,
        auth="test-token",
        staging_dir=tmp_path / "staging",
        device_logs_dir=tmp_path / "deviceLogs",
    )

    def factory(**overrides: Any) -> ProvisioningConfig:
        return replace(base, **overrides)

    return factory
