import pytest

from therapy_backend import storage


@pytest.fixture
def ledger_dir(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr('therapy_backend.core.config.DATA_DIR', str(tmp_path))
    monkeypatch.setattr('therapy_backend.core.config.SEND_EMAILS', False)
    storage._checked_data_dirs.clear()
    yield tmp_path
    storage._checked_data_dirs.clear()
