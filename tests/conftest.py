import pytest

from rrd.config import RRDConfig, reset_config
from rrd.logger import RRDLogger


@pytest.fixture(autouse=True, scope="session")
def _log_to_tmp(tmp_path_factory):
    RRDLogger.setup(log_dir=str(tmp_path_factory.mktemp("logs")), log_level="DEBUG")


@pytest.fixture(autouse=True)
def _fresh_global_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def memory_config():
    return RRDConfig(overrides={"storage": {"backend": "memory"}, "capacity": {"max_records": 5}})


@pytest.fixture
def arrow_config(tmp_path):
    return RRDConfig(overrides={
        "storage": {"backend": "arrow", "base_path": str(tmp_path / "store")},
        "capacity": {"max_records": 5},
        "wal": {"fsync": False, "snapshot_interval": 1000},
    })
