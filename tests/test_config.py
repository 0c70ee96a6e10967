"""Tests for pipewright config loading."""

from pathlib import Path

import pytest
import yaml

from pipewright.config import (
    NotificationTarget,
    OrchestratorSettings,
    WorkflowConfig,
    apply_env_overrides,
    load_config,
    parse_config,
)
from pipewright.pipeline.errors import ConfigError
from pipewright.pipeline.models import EventSource, PipelineStatus, TriggerContext, WhenPolicy

PIPELINE_YAML = """
variables:
  APP: demo
  RETRIES: 3

stages: [build, test, deploy]

default:
  tags: [linux]
  timeout: 30m

workflow:
  name: demo-app
  non_interruptible_refs: ["^release/"]
  non_interruptible_sources: [schedule]

orchestrator:
  concurrency: 2
  grace_period: 5s
  runners:
    - name: docker
      tags: [linux, docker]
      capacity: 2

notifications:
  - type: log
  - type: webhook
    url: https://hooks.example.com/ci
    on: [failed]

image: python:3.12
include:
  - local: other.yml

.setup:
  before_script:
    - echo setup
  script:
    - echo base

build:
  extends: .setup
  stage: build
  script:
    - !reference [.setup, script]
    - echo build

test:
  stage: test
  needs: [build]
  script: [pytest]
  rules:
    - if: $CI_PIPELINE_SOURCE == "merge_request_event"
    - when: never
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "pipewright.yml"
    path.write_text(PIPELINE_YAML)
    return path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "PIPEWRIGHT_CONCURRENCY",
        "PIPEWRIGHT_WORKDIR",
        "PIPEWRIGHT_DB_PATH",
        "PIPEWRIGHT_LOG_DIR",
        "PIPEWRIGHT_WAIT_FOR_MANUAL",
    ):
        monkeypatch.delenv(name, raising=False)


def make_raw(**jobs) -> dict:
    raw: dict = {"stages": ["build", "test"]}
    raw.update(jobs)
    return raw


class TestLoadConfig:
    def test_sections(self, config_file: Path):
        config = load_config(config_file)
        assert config.name == "demo-app"
        assert config.variables == {"APP": "demo", "RETRIES": "3"}
        assert config.stages == ["build", "test", "deploy"]
        assert config.orchestrator.concurrency == 2
        assert config.orchestrator.grace_period_seconds == 5
        assert config.base_dir == config_file.parent.resolve()

    def test_templates(self, config_file: Path):
        config = load_config(config_file)
        assert list(config.templates) == [".setup", "build", "test"]
        assert [t.name for t in config.visible_templates] == ["build", "test"]

        build = config.templates["build"]
        assert build.extends_chain == [".setup"]
        assert build.before_script == ["echo setup"]
        assert build.tags == ["linux"]
        assert build.timeout_seconds == 1800

    def test_reference_splices_list(self, config_file: Path):
        config = load_config(config_file)
        assert config.templates["build"].script == ["echo base", "echo build"]

    def test_rules_and_needs(self, config_file: Path):
        test = load_config(config_file).templates["test"]
        assert [n.job for n in test.needs] == ["build"]
        assert test.rules[0].if_ == '$CI_PIPELINE_SOURCE == "merge_request_event"'
        assert test.rules[1].when == WhenPolicy.NEVER

    def test_notifications(self, config_file: Path):
        log_target, webhook = load_config(config_file).notifications
        assert log_target.type == "log"
        assert len(log_target.on) == 3
        assert webhook.url == "https://hooks.example.com/ci"
        assert webhook.on == [PipelineStatus.FAILED]

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "bad.yml"
        path.write_text("build: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_reference_must_be_sequence(self, tmp_path: Path):
        path = tmp_path / "bad.yml"
        path.write_text("build:\n  script: !reference .setup\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_unresolved_reference(self, tmp_path: Path):
        path = tmp_path / "bad.yml"
        path.write_text("build:\n  script:\n    - !reference [.nope, script]\n")
        with pytest.raises(ConfigError, match="does not resolve"):
            load_config(path)

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        config = load_config(path)
        assert config.templates == {}
        assert config.name == "default"

    def test_env_overrides_applied(self, config_file: Path, monkeypatch):
        monkeypatch.setenv("PIPEWRIGHT_CONCURRENCY", "7")
        assert load_config(config_file).orchestrator.concurrency == 7


class TestParseConfig:
    def test_defaults(self):
        config = parse_config({"job": {"script": ["true"]}})
        assert config.stages == [".pre", "build", "test", "deploy", ".post"]
        assert config.templates["job"].stage == "test"
        assert config.workflow.auto_cancel is True

    def test_top_level_scalar_rejected(self):
        with pytest.raises(ConfigError, match="neither a section nor a job mapping"):
            parse_config({"build": "echo hi"})

    def test_non_mapping_document(self):
        with pytest.raises(ConfigError, match="must be a mapping"):
            parse_config(["build"])  # type: ignore[arg-type]

    def test_ignored_keys_skipped(self):
        config = parse_config(make_raw(image="python", cache={"paths": ["x"]}, job={"script": ["true"]}))
        assert list(config.templates) == ["job"]

    def test_undeclared_stage(self):
        with pytest.raises(ConfigError, match="undeclared stage 'deploy'"):
            parse_config(make_raw(ship={"stage": "deploy", "script": ["true"]}))

    def test_visible_job_needs_script(self):
        with pytest.raises(ConfigError, match="has no script"):
            parse_config(make_raw(job={"stage": "build"}))

    def test_hidden_job_needs_no_script(self):
        config = parse_config(make_raw(**{".base": {"tags": ["x"]}}))
        assert config.visible_templates == []

    def test_validation_error_wrapped(self):
        with pytest.raises(ConfigError, match="Invalid pipeline config"):
            parse_config({"orchestrator": {"concurrency": 0}})

    def test_duplicate_stages(self):
        with pytest.raises(ConfigError, match="Duplicate stage names"):
            parse_config({"stages": ["build", "build"]})

    def test_unknown_extends(self):
        with pytest.raises(ConfigError, match="extends unknown template"):
            parse_config(make_raw(job={"extends": ".missing", "script": ["true"]}))

    def test_malformed_rule_is_fatal_at_load(self):
        rules = [{"if": '$CI_PIPELINE_SOURCE == "push"'}, {"if": '$X ==== "y" &&'}]
        with pytest.raises(ConfigError, match="rule #1"):
            parse_config({"job": {"script": ["true"], "rules": rules}})

    def test_yaml_on_key(self):
        raw = yaml.safe_load("notifications:\n  - type: log\n    on: [canceled]\n")
        config = parse_config(raw)
        assert config.notifications[0].on == [PipelineStatus.CANCELED]

    def test_resolve_path(self, tmp_path: Path):
        config = parse_config({}, base_dir=tmp_path)
        assert config.resolve_path("logs") == tmp_path / "logs"
        assert config.resolve_path("/abs/logs") == Path("/abs/logs")


class TestWorkflowConfig:
    def test_concurrency_group(self):
        workflow = WorkflowConfig(name="app", concurrency_group="{pipeline}-{source}-{ref}")
        trigger = TriggerContext(source=EventSource.PUSH, ref="main")
        assert workflow.concurrency_group_for(trigger) == "app-push-main"

    def test_default_concurrency_group(self):
        trigger = TriggerContext(source=EventSource.PUSH, ref="feature/x")
        assert WorkflowConfig(name="app").concurrency_group_for(trigger) == "app:feature/x"

    def test_interruptible_refs(self):
        workflow = WorkflowConfig(non_interruptible_refs=["^release/", "^main$"])
        assert workflow.interruptible_for(TriggerContext(source=EventSource.PUSH, ref="feature"))
        assert not workflow.interruptible_for(TriggerContext(source=EventSource.PUSH, ref="main"))
        assert not workflow.interruptible_for(
            TriggerContext(source=EventSource.PUSH, ref="release/1.0")
        )

    def test_interruptible_sources(self):
        workflow = WorkflowConfig(non_interruptible_sources=["schedule"])
        assert not workflow.interruptible_for(
            TriggerContext(source=EventSource.SCHEDULE, ref="main")
        )
        assert workflow.interruptible_for(TriggerContext(source=EventSource.PUSH, ref="main"))

    def test_invalid_ref_pattern(self):
        with pytest.raises(ValueError, match="Invalid ref pattern"):
            WorkflowConfig(non_interruptible_refs=["("])


class TestOrchestratorSettings:
    def test_durations(self):
        settings = OrchestratorSettings(grace_period=30, default_timeout="2h 30m")
        assert settings.grace_period_seconds == 30
        assert settings.default_timeout_seconds == 9000

    def test_invalid_duration(self):
        with pytest.raises(ValueError):
            OrchestratorSettings(grace_period="soon")

    def test_default_runner(self):
        (runner,) = OrchestratorSettings(concurrency=3).effective_runners()
        assert runner.name == "local"
        assert runner.tags == ["*"]
        assert runner.capacity == 3

    def test_configured_runners(self):
        settings = OrchestratorSettings(runners=[{"name": "gpu", "tags": ["cuda"]}])
        assert [r.name for r in settings.effective_runners()] == ["gpu"]


class TestEnvOverrides:
    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("PIPEWRIGHT_CONCURRENCY", "0")
        monkeypatch.setenv("PIPEWRIGHT_WORKDIR", "/srv/work")
        monkeypatch.setenv("PIPEWRIGHT_DB_PATH", "/srv/db.sqlite")
        monkeypatch.setenv("PIPEWRIGHT_LOG_DIR", "/srv/logs")
        monkeypatch.setenv("PIPEWRIGHT_WAIT_FOR_MANUAL", "yes")
        settings = OrchestratorSettings()
        apply_env_overrides(settings)
        assert settings.concurrency == 1
        assert settings.workdir == "/srv/work"
        assert settings.db_path == "/srv/db.sqlite"
        assert settings.log_dir == "/srv/logs"
        assert settings.wait_for_manual is True

    def test_bad_concurrency(self, monkeypatch):
        monkeypatch.setenv("PIPEWRIGHT_CONCURRENCY", "many")
        with pytest.raises(ConfigError, match="must be an integer"):
            apply_env_overrides(OrchestratorSettings())

    def test_no_overrides(self):
        settings = OrchestratorSettings()
        apply_env_overrides(settings)
        assert settings.concurrency == 4
        assert settings.wait_for_manual is False


class TestNotificationTarget:
    def test_url_must_be_http(self):
        with pytest.raises(ValueError, match="must be http"):
            NotificationTarget(type="webhook", url="ftp://example.com")
