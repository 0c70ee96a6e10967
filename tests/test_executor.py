"""Tests for the shell script runner, artifact verification and dotenv reports."""

from __future__ import annotations

import asyncio

from pipewright.pipeline.executor import ScriptRunner, read_dotenv, verify_artifacts
from pipewright.pipeline.models import (
    ArtifactReports,
    ArtifactSpec,
    ArtifactWhen,
    ErrorKind,
    JobInstance,
    JobTemplate,
)


def make_template(script: list[str], **overrides) -> JobTemplate:
    defaults: dict = dict(name="job", script=script)
    defaults.update(overrides)
    return JobTemplate(**defaults)


def make_instance(key: str = "job", **overrides) -> JobInstance:
    defaults: dict = dict(key=key, template="job", attempt=1)
    defaults.update(overrides)
    return JobInstance(**defaults)


async def run_script(tmp_path, script: list[str], env: dict | None = None, **template_overrides):
    runner = ScriptRunner(tmp_path)
    return await runner.run(
        make_instance(), make_template(script, **template_overrides), env or {}, asyncio.Event()
    )


# ── Script execution ─────────────────────────────────────────────────────────


class TestScriptRunner:
    async def test_success(self, tmp_path):
        result = await run_script(tmp_path, ["echo hi > out.txt"])
        assert result.succeeded
        assert result.exit_code == 0
        assert (tmp_path / "out.txt").read_text() == "hi\n"

    async def test_exit_code_reported(self, tmp_path):
        result = await run_script(tmp_path, ["exit 3"])
        assert not result.succeeded
        assert result.exit_code == 3
        assert result.error_kind == ErrorKind.SCRIPT_FAILURE
        assert "exit code 3" in result.error_message

    async def test_first_failing_line_stops_script(self, tmp_path):
        result = await run_script(tmp_path, ["false", "touch never"])
        assert result.exit_code == 1
        assert not (tmp_path / "never").exists()

    async def test_environment(self, tmp_path):
        result = await run_script(tmp_path, ['echo "$GREETING" > greeting.txt'], {"GREETING": "hello"})
        assert result.succeeded
        assert (tmp_path / "greeting.txt").read_text() == "hello\n"

    async def test_before_script_runs_first(self, tmp_path):
        await run_script(
            tmp_path, ["echo b >> order.txt"], before_script=["echo a > order.txt"]
        )
        assert (tmp_path / "order.txt").read_text() == "a\nb\n"

    async def test_after_script_failure_ignored(self, tmp_path):
        result = await run_script(tmp_path, ["true"], after_script=["exit 5"])
        assert result.succeeded

    async def test_after_script_runs_after_failure(self, tmp_path):
        result = await run_script(tmp_path, ["exit 1"], after_script=["touch after.txt"])
        assert result.exit_code == 1
        assert (tmp_path / "after.txt").exists()

    async def test_cancel_terminates_process(self, tmp_path):
        runner = ScriptRunner(tmp_path)
        cancel = asyncio.Event()
        task = asyncio.create_task(
            runner.run(
                make_instance(),
                make_template(["sleep 30"], after_script=["touch after.txt"]),
                {},
                cancel,
            )
        )
        await asyncio.sleep(0.2)
        cancel.set()
        result = await asyncio.wait_for(task, 5)

        assert result.canceled
        assert not result.succeeded
        assert not (tmp_path / "after.txt").exists()

    async def test_log_file_written(self, tmp_path):
        log_dir = tmp_path / "logs"
        runner = ScriptRunner(tmp_path, log_dir=log_dir)
        await runner.run(
            make_instance("build[OS=linux]"),
            make_template(["echo logged"]),
            {"CI_PIPELINE_ID": "pl-test"},
            asyncio.Event(),
        )
        log_file = log_dir / "pl-test" / "build_OS_linux_.1.log"
        assert "logged" in log_file.read_text()


# ── Outputs ──────────────────────────────────────────────────────────────────


class TestOutputs:
    async def test_artifacts_collected(self, tmp_path):
        result = await run_script(
            tmp_path,
            ["mkdir -p dist", "touch dist/app.whl"],
            artifacts=ArtifactSpec(paths=["dist/*.whl"]),
        )
        assert result.succeeded
        assert result.artifacts == ["dist/app.whl"]

    async def test_required_artifacts_missing(self, tmp_path):
        result = await run_script(
            tmp_path, ["true"], artifacts=ArtifactSpec(paths=["dist/*.whl"], required=True)
        )
        assert not result.succeeded
        assert result.error_kind == ErrorKind.ARTIFACTS_MISSING
        assert "dist/*.whl" in result.error_message

    async def test_optional_artifacts_missing_only_warns(self, tmp_path, caplog):
        result = await run_script(tmp_path, ["true"], artifacts=ArtifactSpec(paths=["dist/*.whl"]))
        assert result.succeeded
        assert "missing artifacts" in caplog.text

    async def test_script_failure_takes_precedence(self, tmp_path):
        result = await run_script(
            tmp_path,
            ["exit 2"],
            artifacts=ArtifactSpec(paths=["report.txt"], when=ArtifactWhen.ALWAYS, required=True),
        )
        assert result.error_kind == ErrorKind.SCRIPT_FAILURE

    async def test_on_failure_artifacts_skipped_on_success(self, tmp_path):
        result = await run_script(
            tmp_path,
            ["touch crash.log"],
            artifacts=ArtifactSpec(paths=["crash.log"], when=ArtifactWhen.ON_FAILURE),
        )
        assert result.artifacts == []

    async def test_dotenv_report(self, tmp_path):
        result = await run_script(
            tmp_path,
            ['echo "VERSION=1.2.3" > build.env'],
            artifacts=ArtifactSpec(reports=ArtifactReports(dotenv=["build.env"])),
        )
        assert result.dotenv == {"VERSION": "1.2.3"}

    async def test_junit_report(self, tmp_path):
        (tmp_path / "junit.xml").write_text(
            '<testsuite tests="4" failures="1" errors="0" skipped="1"></testsuite>'
        )
        result = await run_script(
            tmp_path,
            ["true"],
            artifacts=ArtifactSpec(reports=ArtifactReports(junit=["junit.xml"])),
        )
        assert result.tests is not None
        assert result.tests.tests == 4
        assert result.tests.failures == 1
        assert result.tests.skipped == 1


class TestVerifyArtifacts:
    def test_found_and_missing(self, tmp_path):
        (tmp_path / "a.txt").write_text("a")
        (tmp_path / "b.txt").write_text("b")
        found, missing = verify_artifacts(tmp_path, ["*.txt", "a.txt", "nope/*"])
        assert found == ["a.txt", "b.txt"]
        assert missing == ["nope/*"]

    def test_empty_pattern_is_missing(self, tmp_path):
        assert verify_artifacts(tmp_path, [""]) == ([], [""])


class TestReadDotenv:
    def test_parsing(self, tmp_path):
        path = tmp_path / "build.env"
        path.write_text(
            "# comment\n"
            "\n"
            "VERSION=1.2.3\n"
            "export CHANNEL = stable\n"
            "QUOTED=\"with spaces\"\n"
            "SINGLE='x'\n"
        )
        assert read_dotenv(path) == {
            "VERSION": "1.2.3",
            "CHANNEL": "stable",
            "QUOTED": "with spaces",
            "SINGLE": "x",
        }

    def test_inline_comment_stripped(self, tmp_path):
        path = tmp_path / "build.env"
        path.write_text("VERSION=1.2 # set by build\n")
        assert read_dotenv(path) == {"VERSION": "1.2"}

    def test_escapes_and_multiline_values(self, tmp_path):
        path = tmp_path / "build.env"
        path.write_text(
            "ESCAPED=\"tab\\there\"\n"
            "NOTES=\"line one\nline two\"\n"
            "LITERAL='$HOME'\n"
        )
        assert read_dotenv(path) == {
            "ESCAPED": "tab\there",
            "NOTES": "line one\nline two",
            "LITERAL": "$HOME",
        }

    def test_key_without_value_dropped(self, tmp_path):
        path = tmp_path / "build.env"
        path.write_text("FLAG\nNAME=x\n")
        assert read_dotenv(path) == {"NAME": "x"}

    def test_missing_file(self, tmp_path):
        assert read_dotenv(tmp_path / "missing.env") == {}
