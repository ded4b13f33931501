"""Tests for loading rule documents."""

import asyncio
import json

import pytest
import yaml

from m365guard.analyzer.ruleset import RuleLoadFailure
from m365guard.analyzer.ruleset_loader import RuleSetLoader


@pytest.fixture
def rules_file(tmp_path, rules_doc):
    path = tmp_path / "detection-rules.json"
    path.write_text(json.dumps(rules_doc), encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_loads_json_file(rules_file):
    loader = RuleSetLoader(rules_file)
    ruleset = await loader.load()
    assert ruleset.version == "1.0.0"
    assert loader.cached is ruleset


@pytest.mark.asyncio
async def test_loads_yaml_file(tmp_path, rules_doc):
    path = tmp_path / "rules.yaml"
    path.write_text(yaml.safe_dump(rules_doc), encoding="utf-8")
    ruleset = await RuleSetLoader(path).load()
    assert len(ruleset.scoring_rules) == len(rules_doc["rules"])


@pytest.mark.asyncio
async def test_get_caches(rules_file):
    loader = RuleSetLoader(rules_file)
    first = await loader.get()
    rules_file.unlink()
    assert await loader.get() is first


@pytest.mark.asyncio
async def test_missing_file_is_load_failure(tmp_path):
    loader = RuleSetLoader(tmp_path / "nope.json")
    with pytest.raises(RuleLoadFailure) as excinfo:
        await loader.load()
    assert excinfo.value.source == str(tmp_path / "nope.json")


@pytest.mark.asyncio
async def test_bad_json_is_load_failure(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(RuleLoadFailure, match="not valid json"):
        await RuleSetLoader(path).load()


@pytest.mark.asyncio
async def test_schema_violation_carries_source(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"trusted_origins": []}), encoding="utf-8")
    with pytest.raises(RuleLoadFailure) as excinfo:
        await RuleSetLoader(path).load()
    assert excinfo.value.source == str(path)


@pytest.mark.asyncio
async def test_timeout_is_load_failure(rules_file, monkeypatch):
    loader = RuleSetLoader(rules_file, timeout=0.01)

    async def slow_fetch():
        await asyncio.sleep(1)
        return "{}", "json"

    monkeypatch.setattr(loader, "_fetch", slow_fetch)
    with pytest.raises(RuleLoadFailure, match="Timed out"):
        await loader.load()


@pytest.mark.asyncio
async def test_failed_reload_keeps_previous_rules(rules_file):
    loader = RuleSetLoader(rules_file)
    original = await loader.load()
    rules_file.write_text("[]", encoding="utf-8")
    with pytest.raises(RuleLoadFailure):
        await loader.reload()
    assert loader.cached is original

