import io

import pytest

import kfnotebooks


@pytest.fixture
def err(monkeypatch):
    # the library binds sys.stderr at import time
    buf = io.StringIO()
    monkeypatch.setattr(kfnotebooks, "stderr", buf)
    return buf
