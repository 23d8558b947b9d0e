import io
import json
import logging

import pytest
from PIL import Image

import run_pipeline
from mediafilter.logging import setup_logging
from tests.helpers.media import image_bytes

pytestmark = [pytest.mark.cli]


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "scale.json"
    path.write_text(
        json.dumps(
            {
                "source.selector": "ORIGINAL/*.png",
                "target.spec": "THUMBNAIL",
                "target.format": "JPEG",
                "target.policy": "item",
                "image.maxwidth": 80,
                "image.maxheight": 80,
            }
        )
    )
    return path


@pytest.fixture
def item_dir(tmp_path):
    root = tmp_path / "item"
    (root / "ORIGINAL").mkdir(parents=True)
    (root / "ORIGINAL" / "photo.png").write_bytes(image_bytes((160, 120)))
    (root / ".policies.json").write_text(json.dumps({"item": [{"action": "READ"}]}))
    return root


def test_cli_writes_derivative(config, item_dir, capsys, monkeypatch):
    monkeypatch.chdir(item_dir.parent)
    assert run_pipeline.main(["--config", str(config), "--verbose", str(item_dir)]) == 0

    thumb = item_dir / "THUMBNAIL" / "photo.png.jpg"
    assert Image.open(io.BytesIO(thumb.read_bytes())).size == (80, 60)
    policies = json.loads((item_dir / ".policies.json").read_text())
    assert policies["THUMBNAIL/photo.png.jpg"] == [{"action": "READ", "group": "Anonymous"}]

    out = capsys.readouterr().out
    assert "success - Filtered item: workspace item:" in out
    assert "created 'photo.png.jpg'" in out


def test_cli_second_run_skips_unless_forced(config, item_dir, capsys, monkeypatch):
    monkeypatch.chdir(item_dir.parent)
    run_pipeline.main(["--config", str(config), str(item_dir)])
    capsys.readouterr()

    assert run_pipeline.main(["--config", str(config), str(item_dir)]) == 0
    assert ": skip - " in capsys.readouterr().out

    assert run_pipeline.main(["--config", str(config), "--force", str(item_dir)]) == 0
    assert ": success - " in capsys.readouterr().out


def test_cli_reports_configuration_errors(tmp_path, item_dir, capsys, monkeypatch):
    monkeypatch.chdir(tmp_path)
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"source.selector": "ORIGINAL/*", "target.spec": "THUMBNAIL"}))

    assert run_pipeline.main(["--config", str(bad), str(item_dir)]) == 2
    assert "target.format" in capsys.readouterr().err


@pytest.mark.parametrize("content", [None, "{broken"])
def test_cli_reports_unreadable_config(tmp_path, item_dir, capsys, monkeypatch, content):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "task.json"
    if content is not None:
        path.write_text(content)

    assert run_pipeline.main(["--config", str(path), str(item_dir)]) == 2
    assert capsys.readouterr().err.startswith("Error: Cannot read task properties")


def test_verbose_logging_keeps_decoder_libraries_quiet():
    setup_logging(verbose=True)
    assert logging.getLogger("PIL").getEffectiveLevel() == logging.WARNING
    assert logging.getLogger("pypdf").getEffectiveLevel() == logging.WARNING
