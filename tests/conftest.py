from __future__ import annotations

import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

BUGGY_CALC = textwrap.dedent(
    """
    def add(a, b):
        return a - b


    def sub(a, b):
        return a - b
    """
).lstrip()

FIXED_CALC = BUGGY_CALC.replace("return a - b", "return a + b", 1)

CHECK_SPECIFIC = textwrap.dedent(
    """
    import sys

    from calc import add

    result = add(2, 3)
    if result != 5:
        print(f"FAIL: add(2, 3) == {result}, expected 5")
        sys.exit(1)
    print("ok")
    """
).lstrip()

CHECK_SUITE = textwrap.dedent(
    """
    import sys

    from calc import add, sub

    failures = []
    if add(2, 3) != 5:
        failures.append(f"FAIL: add(2, 3) == {add(2, 3)}")
    if sub(5, 3) != 2:
        failures.append(f"FAIL: sub(5, 3) == {sub(5, 3)}")
    print("\\n".join(failures) or "suite ok")
    sys.exit(1 if failures else 0)
    """
).lstrip()


def python_command(script: str) -> str:
    return f'"{sys.executable}" {script}'


@dataclass(slots=True)
class SandboxRepo:
    """Working clone plus the bare repository it pushes to."""

    root: Path
    origin: Path

    def git(self, *args: str) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=self.root,
            check=True,
            capture_output=True,
            text=True,
        )
        return result.stdout

    def origin_branches(self) -> List[str]:
        result = subprocess.run(
            ["git", "--git-dir", str(self.origin), "for-each-ref", "--format=%(refname:short)", "refs/heads"],
            check=True,
            capture_output=True,
            text=True,
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def local_branches(self) -> List[str]:
        output = self.git("for-each-ref", "--format=%(refname:short)", "refs/heads")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def commits_since(self, base: str, ref: str) -> int:
        return int(self.git("rev-list", "--count", f"{base}..{ref}").strip())

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")


@pytest.fixture()
def sandbox_repo(tmp_path: Path) -> SandboxRepo:
    """Create a repository with a buggy module, check scripts and a bare origin."""

    origin = tmp_path / "origin.git"
    subprocess.run(["git", "init", "--bare", str(origin)], check=True, capture_output=True)
    subprocess.run(
        ["git", "--git-dir", str(origin), "symbolic-ref", "HEAD", "refs/heads/main"],
        check=True,
        capture_output=True,
    )

    root = tmp_path / "work"
    root.mkdir()
    repo = SandboxRepo(root=root, origin=origin)
    repo.git("init")
    repo.git("symbolic-ref", "HEAD", "refs/heads/main")
    repo.git("config", "user.email", "agent@example.com")
    repo.git("config", "user.name", "Autofix Tests")
    repo.git("remote", "add", "origin", str(origin))

    (root / ".gitignore").write_text("__pycache__/\n*.pyc\n", encoding="utf-8")
    (root / "calc.py").write_text(BUGGY_CALC, encoding="utf-8")
    (root / "check_specific.py").write_text(CHECK_SPECIFIC, encoding="utf-8")
    (root / "check_suite.py").write_text(CHECK_SUITE, encoding="utf-8")

    repo.git("add", ".")
    repo.git("commit", "-m", "Initial sandbox state")
    repo.git("push", "--set-upstream", "origin", "main")
    return repo
