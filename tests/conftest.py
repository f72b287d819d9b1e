import ast
import io
import sys
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Set

import pytest

from archdeploy.executil import DryRunExecutor, Executor, Result
from archdeploy.logs import DeployLogger
from archdeploy.model import DeploymentConfig, DeploymentContext, Flags, Mounts
from archdeploy.prompts import Prompter
from archdeploy.state import StateStore

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "archdeploy").absolute()


class FakeRunner:
    """Replaces ``executil.run``: records argv lists, answers by longest matching prefix."""

    def __init__(self):
        self.calls = []
        self.replies = {}

    def reply(self, prefix, rc=0, out="", err=""):
        self.replies[tuple(prefix)] = Result(rc, out, err, 0.0)

    def __call__(self, cmd, check=False, timeout=None, input_text=None, logger=None):
        self.calls.append(list(cmd))
        for key in sorted(self.replies, key=len, reverse=True):
            if tuple(cmd[:len(key)]) == key:
                return self.replies[key]
        return Result(0, "", "", 0.0)

    def ran(self, *prefix):
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]


class ScriptedInput:
    """Feeds canned answers to ``input``/``getpass`` and remembers the prompts."""

    def __init__(self, answers=()):
        self.answers = list(answers)
        self.prompts = []

    def __call__(self, prompt=""):
        self.prompts.append(prompt)
        if not self.answers:
            raise AssertionError(f"unexpected prompt: {prompt!r}")
        return self.answers.pop(0)


@pytest.fixture
def logger(tmp_path):
    return DeployLogger(str(tmp_path / "logs"), stamp="20260101-000000", level="DEBUG",
                        stream=io.StringIO(), color=False)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def executor(logger, runner):
    return Executor(logger, runner=runner, sleep=lambda s: None)


@pytest.fixture
def dry_executor(logger, runner):
    return DryRunExecutor(logger, runner=runner)


@pytest.fixture
def scripted():
    return ScriptedInput


@pytest.fixture
def make_ctx(tmp_path, logger):
    def _make(executor, answers=(), passwords=(), dry_run=False, assume_defaults=False, config=None, **flags):
        prompter = Prompter(logger, input_fn=ScriptedInput(answers), getpass_fn=ScriptedInput(passwords),
                            assume_defaults=assume_defaults, stream=io.StringIO())
        return DeploymentContext(
            config=config or DeploymentConfig(),
            flags=Flags(dry_run=dry_run, assume_defaults=assume_defaults, **flags),
            executor=executor,
            logger=logger,
            state=StateStore(str(tmp_path / "state" / "arch-deploy-state-1.json"), logger),
            prompter=prompter,
            mounts=Mounts(root=str(tmp_path / "mnt")),
        )

    return _make


# --- line coverage summary for the package -------------------------------

_EXECUTED: Dict[Path, Set[int]] = defaultdict(set)
_CANDIDATES: Dict[Path, Set[int]] = {}
_SAVED = {"trace": None, "thread": None, "active": False}


def _statement_lines(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()
    text = source.splitlines()
    lines = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.stmt) and node.lineno <= len(text):
            stripped = text[node.lineno - 1].strip()
            if stripped and not stripped.startswith("#"):
                lines.add(node.lineno)
    return lines


for _path in sorted(_PACKAGE_DIR.glob("*.py")):
    _CANDIDATES[_path.absolute()] = _statement_lines(_path)


def _trace(frame, event, arg):
    if event == "line":
        path = Path(frame.f_code.co_filename).absolute()
        if path in _CANDIDATES:
            _EXECUTED[path].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    if _SAVED["active"]:
        return
    _SAVED.update(trace=sys.gettrace(), thread=threading.gettrace(), active=True)
    sys.settrace(_trace)
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    if not _SAVED["active"]:
        return
    _SAVED["active"] = False
    sys.settrace(_SAVED["trace"])
    threading.settrace(_SAVED["thread"])

    reporter = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = reporter.write_line if reporter else print
    total = hit = 0
    write_line("")
    write_line("Coverage summary for 'archdeploy':")
    for path, candidates in sorted(_CANDIDATES.items()):
        if not candidates:
            continue
        covered = len(_EXECUTED.get(path, set()) & candidates)
        total += len(candidates)
        hit += covered
        write_line(f"{str(path.relative_to(_ROOT_DIR)):<40} {len(candidates):>5} {covered / len(candidates):>7.1%}")
    if total:
        write_line(f"{'TOTAL':<40} {total:>5} {hit / total:>7.1%}")
