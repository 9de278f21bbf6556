import os
from pathlib import Path

import pytest

from settings import Settings


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body)
    os.chmod(path, 0o755)
    return path


@pytest.fixture
def settings(tmp_path):
    return Settings(src_resc="r1", dest_resc="r2", log_file=tmp_path / "phymv.log")
