# tests/test_cli.py

import json

import cv2
import numpy as np
import pytest

from embedcache.cli import main_cli


@pytest.fixture
def image_dir(tmp_path):
    """Directory of small coloured test images"""
    directory = tmp_path / "catalog"
    (directory / "nested").mkdir(parents=True)
    colors = {'red': (0, 0, 255), 'green': (0, 255, 0), 'blue': (255, 0, 0)}
    for i, (name, color) in enumerate(colors.items()):
        img = np.zeros((80, 80, 3), dtype=np.uint8)
        img[:] = color
        cv2.rectangle(img, (10 + i * 5, 10), (60, 60), (255, 255, 255), -1)
        target = directory / "nested" if name == 'blue' else directory
        cv2.imwrite(str(target / f"{name}.png"), img)
    (directory / "readme.txt").write_text("not an image")
    return directory


@pytest.fixture
def common_args(tmp_path):
    return ['--config', str(tmp_path / "absent.yaml"),
            '--snapshot', str(tmp_path / "cache" / "embeddings.json")]


def test_no_command_prints_help(capsys):
    assert main_cli([]) == 0
    assert 'usage' in capsys.readouterr().out.lower()


def test_index_then_search(image_dir, common_args, tmp_path, capsys):
    assert main_cli(['index', str(image_dir)] + common_args) == 0
    out = capsys.readouterr().out
    assert "Found 3 images" in out
    assert "Indexed 3 images (0 failed)" in out

    output = tmp_path / "results" / "matches.json"
    query = str(image_dir / "red.png")
    assert main_cli(['search', query, '-k', '2', '-t', '0.0', '-o', str(output)] + common_args) == 0
    out = capsys.readouterr().out
    assert "Loaded 3 cached embeddings" in out
    assert f"1. {query}" in out

    results = json.loads(output.read_text())
    assert results['success'] is True
    assert len(results['matches']) == 2
    assert results['matches'][0]['score'] == pytest.approx(1.0, abs=1e-5)


def test_index_without_recursion(image_dir, common_args, capsys):
    assert main_cli(['index', str(image_dir), '--no-recursive'] + common_args) == 0
    assert "Found 2 images" in capsys.readouterr().out


def test_search_with_index_and_metric(image_dir, common_args, capsys):
    main_cli(['index', str(image_dir)] + common_args)
    capsys.readouterr()

    query = str(image_dir / "green.png")
    assert main_cli(['search', query, '--use-index', '-m', 'euclidean'] + common_args) == 0
    assert f"1. {query}" in capsys.readouterr().out


def test_search_without_index_fails(image_dir, common_args, capsys):
    assert main_cli(['search', str(image_dir / "red.png")] + common_args) == 1
    assert "index images first" in capsys.readouterr().out


def test_search_unreadable_query(image_dir, common_args, capsys):
    main_cli(['index', str(image_dir)] + common_args)
    capsys.readouterr()

    assert main_cli(['search', str(image_dir / "readme.txt")] + common_args) == 1
    assert "Error" in capsys.readouterr().out


def test_index_missing_directory(tmp_path, common_args, capsys):
    assert main_cli(['index', str(tmp_path / "nowhere")] + common_args) == 1
    assert "Cannot read directory" in capsys.readouterr().out


def test_stats(image_dir, common_args, capsys):
    main_cli(['index', str(image_dir)] + common_args)
    capsys.readouterr()

    assert main_cli(['stats'] + common_args) == 0
    out = capsys.readouterr().out
    assert "Entries:          3" in out
    assert "Dimension:        99" in out
