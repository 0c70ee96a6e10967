"""Tests for variable resolution, $VAR expansion and dispatch environments."""

from __future__ import annotations

import logging

import pytest

from pipewright.pipeline.errors import ConfigError
from pipewright.pipeline.models import (
    EventSource,
    JobInstance,
    JobTemplate,
    PipelineRunContext,
    TriggerContext,
)
from pipewright.pipeline.variables import (
    VariableResolver,
    VariableSet,
    build_environment,
    expand_variables,
    predefined_variables,
)


def make_template(**overrides) -> JobTemplate:
    defaults: dict = dict(
        name="job",
        extends_chain=[".base"],
        variable_layers=[(".base", {"A": "base", "B": "base"}), ("job", {"A": "job"})],
        script=["true"],
    )
    defaults.update(overrides)
    return JobTemplate(**defaults)


def make_run_context(**trigger_overrides) -> PipelineRunContext:
    trigger: dict = dict(source=EventSource.PUSH, ref="main")
    trigger.update(trigger_overrides)
    return PipelineRunContext.create(TriggerContext(**trigger), pipeline_name="app")


# ── VariableSet ──────────────────────────────────────────────────────────────


class TestVariableSet:
    def test_later_layers_win(self):
        resolved = VariableSet([("global", {"A": "1", "B": "1"}), ("job:build", {"A": "2"})])
        assert resolved["A"] == "2"
        assert resolved["B"] == "1"
        assert resolved.source_of("A") == "job:build"
        assert resolved.source_of("B") == "global"
        assert resolved.source_of("C") is None

    def test_mapping_protocol(self):
        resolved = VariableSet([("global", {"A": "1"})])
        assert len(resolved) == 1
        assert list(resolved) == ["A"]
        assert dict(resolved) == {"A": "1"}
        assert resolved.to_dict() == {"A": "1"}


# ── Resolver ─────────────────────────────────────────────────────────────────


class TestVariableResolver:
    def test_precedence(self):
        resolver = VariableResolver({"A": "global", "G": "global"})
        resolved = resolver.resolve(
            make_template(), matrix_cell={"B": "matrix"}, rule_variables={"C": "rule"}
        )
        assert resolved.to_dict() == {"A": "job", "G": "global", "B": "matrix", "C": "rule"}
        assert resolved.source_of("A") == "job:job"
        assert resolved.source_of("G") == "global"
        assert resolved.source_of("B") == "matrix"
        assert resolved.source_of("C") == "rule"

    def test_extends_layer_source(self):
        resolved = VariableResolver().resolve(make_template(variable_layers=[(".base", {"X": "1"})]))
        assert resolved.source_of("X") == "extends:.base"

    def test_rule_beats_matrix(self):
        resolved = VariableResolver().resolve(
            make_template(), matrix_cell={"A": "matrix"}, rule_variables={"A": "rule"}
        )
        assert resolved["A"] == "rule"

    def test_deterministic(self):
        resolver = VariableResolver({"G": "1"})
        template = make_template()
        first = resolver.resolve(template, {"OS": "linux"}, {"R": "x"})
        second = resolver.resolve(template, {"OS": "linux"}, {"R": "x"})
        assert first.to_dict() == second.to_dict()
        assert [first.source_of(k) for k in first] == [second.source_of(k) for k in second]

    def test_self_in_chain_rejected(self):
        with pytest.raises(ConfigError, match="Cyclic extends chain"):
            VariableResolver().resolve(make_template(extends_chain=["job"]))


# ── Expansion ────────────────────────────────────────────────────────────────


class TestExpandVariables:
    def test_nested_references(self):
        expanded = expand_variables({"A": "x", "B": "${A}-y", "C": "$B/z"})
        assert expanded == {"A": "x", "B": "x-y", "C": "x-y/z"}

    def test_escaped_dollar(self):
        assert expand_variables({"PRICE": "$$5"}) == {"PRICE": "$5"}

    def test_unknown_expands_empty(self):
        assert expand_variables({"A": "[$NOPE]"}) == {"A": "[]"}

    def test_environ_fallback(self):
        assert expand_variables({"BIN": "$HOME/bin"}, {"HOME": "/root"}) == {"BIN": "/root/bin"}

    def test_variables_shadow_environ(self):
        assert expand_variables({"HOME": "/ci", "BIN": "$HOME/bin"}, {"HOME": "/root"})["BIN"] == "/ci/bin"

    def test_cycle_left_unexpanded(self, caplog):
        with caplog.at_level(logging.WARNING, logger="pipewright.pipeline.variables"):
            expanded = expand_variables({"A": "$B", "B": "$A"})
        assert expanded["A"] == "${A}"
        assert "Variable reference cycle" in caplog.text

    def test_self_reference(self):
        assert expand_variables({"PATH": "$PATH:/opt"}) == {"PATH": "${PATH}:/opt"}


# ── Dispatch environment ─────────────────────────────────────────────────────


class TestPredefinedVariables:
    def test_instance_fields(self):
        run_context = make_run_context()
        instance = JobInstance(
            key="test[OS=linux, V=3]",
            template="test",
            stage="test",
            attempt=2,
            node_index=1,
            node_total=4,
        )
        env = predefined_variables(run_context, instance, "/work")
        assert env["CI"] == "true"
        assert env["CI_PIPELINE_ID"] == run_context.run_id
        assert env["CI_PIPELINE_NAME"] == "app"
        assert env["CI_PROJECT_DIR"] == "/work"
        assert env["CI_JOB_NAME"] == "test[OS=linux, V=3]"
        assert env["CI_JOB_NAME_SLUG"] == "test-os-linux-v-3"
        assert env["CI_JOB_STAGE"] == "test"
        assert env["CI_JOB_ATTEMPT"] == "2"
        assert env["CI_NODE_INDEX"] == "1"
        assert env["CI_NODE_TOTAL"] == "4"
        assert env["CI_COMMIT_BRANCH"] == "main"

    def test_absent_fields_omitted(self):
        env = predefined_variables(make_run_context(), JobInstance(key="a", template="a"), "/work")
        assert "CI_COMMIT_TAG" not in env
        assert "CI_NODE_INDEX" not in env


class TestBuildEnvironment:
    def test_layering(self):
        run_context = make_run_context(variables={"Y": "trigger"})
        instance = JobInstance(
            key="deploy",
            template="deploy",
            stage="deploy",
            variables={"X": "instance", "Y": "instance", "CI_JOB_STAGE": "custom"},
        )
        env = build_environment(run_context, instance, "/work", dotenv={"X": "dotenv", "Z": "dotenv"})
        assert env["X"] == "dotenv"
        assert env["Y"] == "trigger"
        assert env["Z"] == "dotenv"
        assert env["CI_JOB_STAGE"] == "custom"

    def test_references_to_predefined(self):
        instance = JobInstance(key="build", template="build", variables={"IMAGE": "app:$CI_COMMIT_REF_NAME"})
        env = build_environment(make_run_context(ref="feature"), instance, "/work")
        assert env["IMAGE"] == "app:feature"

    def test_predefined_values_are_literal(self):
        run_context = make_run_context(commit_message="cost $HOME $$5")
        instance = JobInstance(key="build", template="build", variables={"MSG": "$CI_COMMIT_MESSAGE"})
        env = build_environment(run_context, instance, "/work", environ={"HOME": "/root"})
        assert env["CI_COMMIT_MESSAGE"] == "cost $HOME $$5"
        assert env["MSG"] == "cost $HOME $$5"
