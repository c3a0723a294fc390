import json
import os
import time
from pathlib import Path

import pytest

from filedrop.config import ConfigStore


def write_config(path: Path, **settings) -> Path:
    """Write ``settings`` as a TOML document and push its mtime forward."""
    lines = []
    for key, value in settings.items():
        if isinstance(value, bool):
            lines.append(f"{key} = {'true' if value else 'false'}")
        elif isinstance(value, (int, float)):
            lines.append(f"{key} = {value}")
        else:
            lines.append(f"{key} = {json.dumps(str(value))}")
    path.write_text("\n".join(lines) + "\n")

    # Make sure pollers comparing mtimes notice back-to-back rewrites
    stamp = time.time() + write_config.bumps
    write_config.bumps += 1
    os.utime(path, (stamp, stamp))
    return path


write_config.bumps = 0


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "files"


@pytest.fixture
def temp_dir(tmp_path):
    return tmp_path / "temp"


@pytest.fixture
def config_file(tmp_path, upload_dir, temp_dir):
    return write_config(
        tmp_path / "config.toml",
        upload_dir=upload_dir,
        temp_dir=temp_dir,
        max_file_size=1024 * 1024,
        stats_interval=0,
    )


@pytest.fixture
def store(config_file):
    config_store = ConfigStore(search_paths=[config_file])
    config_store.load()
    return config_store
