import os
import tempfile

# Keep imports of the app away from the repo cache, log file and refresh timer.
_TMP = tempfile.mkdtemp(prefix="dca-lab-tests-")
os.environ.setdefault("DCA_CACHE_DIR", os.path.join(_TMP, "market-cache"))
os.environ.setdefault("DCA_LOG_PATH", os.path.join(_TMP, "dca-lab.log"))
os.environ.setdefault("DCA_AUTO_REFRESH", "0")

import pytest

from backend.app.services.series_store import SeriesStore


@pytest.fixture
def store(tmp_path):
    return SeriesStore(tmp_path / "market-cache")
