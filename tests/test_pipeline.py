"""
Tests for ExecutionSession pieces that don't need a child process.
"""

from pathlib import Path

import pytest

from notebook_go.config import EngineConfig, Submission
from notebook_go.pipeline import ExecutionSession, SessionState, unused_imports
from notebook_go.synthesizer import LineMap, SynthesizedProgram
from notebook_go.toolchain import missing_packages


def make_session(tmp_path, program=None, submission=None):
    program = program or SynthesizedProgram(source="package main\n", line_map=LineMap())
    session = ExecutionSession(tmp_path, program, submission or Submission(),
                               EngineConfig(), toolchain=None, manifest=None, bus=None)
    session.artifact = Path("/tmp/cell")
    return session


class TestBuildOutputParsing:

    def test_unused_imports(self):
        output = (
            './main.go:4:2: "strings" imported and not used\n'
            './main.go:5:2: "os/exec" imported as ex and not used\n'
            './main.go:6:2: imported and not used: "math"\n'
            './main.go:7:2: "strings" imported and not used\n'
        )

        assert unused_imports(output) == ["strings", "os/exec", "math"]

    def test_missing_packages(self):
        output = (
            "main.go:4:2: no required module provides package github.com/x/y; "
            "to add it:\n\tgo get github.com/x/y\n"
            'main.go:5:2: cannot find package "example.com/z" in any of:\n'
        )

        assert missing_packages(output) == ["github.com/x/y", "example.com/z"]

    def test_clean_output(self):
        assert unused_imports("") == []
        assert missing_packages("./main.go:3:1: syntax error") == []


class TestSessionState:

    def test_starts_idle(self, tmp_path):
        assert make_session(tmp_path).state is SessionState.IDLE

    def test_valid_transitions(self, tmp_path):
        session = make_session(tmp_path)
        for state in (SessionState.PREPARING, SessionState.COMPILING, SessionState.COMPILED,
                      SessionState.SPAWNING, SessionState.RUNNING, SessionState.COMPLETED,
                      SessionState.IDLE):
            session.transition(state)

        assert session.state is SessionState.IDLE

    def test_invalid_transition_raises(self, tmp_path):
        session = make_session(tmp_path)

        with pytest.raises(RuntimeError, match="idle -> running"):
            session.transition(SessionState.RUNNING)

    def test_compile_failed_cannot_run(self, tmp_path):
        session = make_session(tmp_path)
        session.transition(SessionState.PREPARING)
        session.transition(SessionState.COMPILING)
        session.transition(SessionState.COMPILE_FAILED)

        with pytest.raises(RuntimeError):
            session.transition(SessionState.SPAWNING)

    def test_exited_ignores_cancelled(self, tmp_path):
        session = make_session(tmp_path)
        session.returncode = 1
        assert session.exited

        session.cancel()
        assert not session.exited


class TestCommand:

    def test_plain_args(self, tmp_path):
        session = make_session(tmp_path, submission=Submission(args=["-x", "1"]))

        assert session.command() == ["/tmp/cell", "-x", "1"]

    def test_test_mode_runs_all(self, tmp_path):
        program = SynthesizedProgram(source="", line_map=LineMap(), is_test=True,
                                     known_tests=["TestA"])

        assert make_session(tmp_path, program).command() == ["/tmp/cell", "-test.v"]

    def test_test_mode_with_benchmarks(self, tmp_path):
        program = SynthesizedProgram(source="", line_map=LineMap(), is_test=True,
                                     known_tests=["TestA", "BenchmarkB"])

        assert make_session(tmp_path, program).command() == [
            "/tmp/cell", "-test.v", "-test.bench=."]

    def test_test_mode_selection(self, tmp_path):
        program = SynthesizedProgram(source="", line_map=LineMap(), is_test=True,
                                     test_selection=["TestA", "TestC", "BenchmarkB"])

        assert make_session(tmp_path, program).command() == [
            "/tmp/cell", "-test.v", "-test.run=^(TestA|TestC)$", "-test.bench=^(BenchmarkB)$"]

    def test_test_mode_only_benchmarks(self, tmp_path):
        program = SynthesizedProgram(source="", line_map=LineMap(), is_test=True,
                                     test_selection=["BenchmarkB"])

        assert make_session(tmp_path, program).command() == [
            "/tmp/cell", "-test.v", "-test.run=^$", "-test.bench=^(BenchmarkB)$"]

    def test_test_mode_explicit_args(self, tmp_path):
        program = SynthesizedProgram(source="", line_map=LineMap(), is_test=True)
        submission = Submission(args=["-test.run=TestA"], explicit_args=True)

        assert make_session(tmp_path, program, submission).command() == [
            "/tmp/cell", "-test.run=TestA"]
