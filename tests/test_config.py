#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from forestconn import config as cfg


def test_defaults_match_analysis_parameters():
    s = cfg.load_settings(None)
    c = s.connectivity
    assert s.cleaning.size_threshold == 250
    assert c.gap_threshold == 50
    assert c.metric_radius == 1000
    assert c.search_radius == 1500
    assert c.max_cost_distance == 5000
    assert c.alpha == pytest.approx(-1.0 / 282.0)


def test_explicit_alpha_overrides_home_range():
    s = cfg.settings_from_dict({"connectivity": {"decay_alpha": -0.01}})
    assert s.connectivity.alpha == -0.01


def test_repo_config_file_loads():
    s = cfg.load_settings(ROOT / "config" / "connectivity.yaml")
    assert s == cfg.load_settings(None)


def test_search_radius_must_exceed_metric_radius():
    with pytest.raises(ValueError, match="search_radius"):
        cfg.settings_from_dict({"connectivity": {"metric_radius": 1500, "search_radius": 1500}})


def test_unknown_keys_are_rejected():
    with pytest.raises(ValueError, match="Unknown keys"):
        cfg.settings_from_dict({"connectivity": {"gap_treshold": 50}})
    with pytest.raises(ValueError, match="Unknown config sections"):
        cfg.settings_from_dict({"conectivity": {}})


def test_bad_choices_are_rejected():
    with pytest.raises(ValueError, match="overlap"):
        cfg.settings_from_dict({"connectivity": {"overlap": "max"}})
    with pytest.raises(ValueError, match="executor"):
        cfg.settings_from_dict({"runtime": {"executor": "cluster"}})
    with pytest.raises(ValueError, match="alpha"):
        cfg.settings_from_dict({"connectivity": {"decay_alpha": 0.5}})


def test_load_yaml_strict(tmp_path):
    with pytest.raises(SystemExit):
        cfg.load_yaml(tmp_path / "missing.yaml")
    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        cfg.load_yaml(p)
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert cfg.load_yaml(empty) == {}


def test_coerce_bbox():
    assert cfg.coerce_bbox([0, 1, 2, 3]) == (0.0, 1.0, 2.0, 3.0)
    assert cfg.coerce_bbox([2, 1, 0, 3]) is None
    assert cfg.coerce_bbox("0,1,2,3") is None
    assert cfg.format_bbox((0, 1, 2, 3), precision=0) == "[0, 1, 2, 3]"


def test_default_config_file_is_picked_up(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert cfg.resolve_config_path(None) is None
    explicit = tmp_path / "mine.yaml"
    assert cfg.resolve_config_path(explicit) == explicit

    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "connectivity.yaml").write_text("connectivity:\n  gap_threshold: 77\n", encoding="utf-8")
    path = cfg.resolve_config_path(None)
    assert path == cfg.DEFAULT_CONFIG_YAML
    assert cfg.load_settings(path).connectivity.gap_threshold == 77
