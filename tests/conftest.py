from __future__ import annotations

from typing import Callable, Optional

import pytest

from fakes import FakeFFmpeg, FakeLauncher, fast_timeouts, no_bundle
from ggbhost.config import InstanceConfig, TimeoutConfig
from ggbhost.runtime.instance import EngineInstance


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def make_instance(launcher: FakeLauncher) -> Callable[..., EngineInstance]:
    def factory(timeouts: Optional[TimeoutConfig] = None, config: Optional[InstanceConfig] = None) -> EngineInstance:
        return EngineInstance(
            config or InstanceConfig(),
            timeouts=timeouts or fast_timeouts(),
            launcher=launcher,
            bundle_loader=no_bundle,
        )

    return factory


@pytest.fixture
def ffmpeg() -> FakeFFmpeg:
    return FakeFFmpeg()
