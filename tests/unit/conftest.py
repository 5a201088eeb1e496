import pathlib
from typing import Any

import _pytest.logging
import _pytest.tmpdir
import pytest

from vmrange.log import Logger
from vmrange.utils import Path


@pytest.fixture(name='root_logger')
def fixture_root_logger(caplog: _pytest.logging.LogCaptureFixture) -> Logger:
    return Logger.create(verbose=0, debug=0, quiet=False, apply_colors_logging=False)


# Equivalent fixtures to `tmp_path_factory` and `tmp_path` recasting the paths
# to vmrange's Path.
class TempPathFactory:
    def __init__(self, actual_factory: Any) -> None:
        self._actual_factory = actual_factory

    def getbasetemp(self) -> Path:
        return Path(str(self._actual_factory.getbasetemp()))

    def mktemp(self, basename: str, numbered: bool = True) -> Path:
        return Path(str(self._actual_factory.mktemp(basename, numbered=numbered)))


@pytest.fixture(scope='session')
def tmppath_factory(tmp_path_factory: _pytest.tmpdir.TempPathFactory) -> TempPathFactory:
    return TempPathFactory(tmp_path_factory)


@pytest.fixture()
def tmppath(tmp_path: pathlib.Path) -> Path:
    return Path(str(tmp_path))
