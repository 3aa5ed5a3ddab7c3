"""Built-in per-file checks for the validation gate."""

import subprocess
from pathlib import Path
from typing import Sequence, Tuple

from treesync.sync.validation import CheckFunction


def check_not_empty(path: Path) -> Tuple[bool, str]:
    """Fail files that are empty, usually a sign of a truncated download."""
    if path.stat().st_size == 0:
        return False, "file is empty"
    return True, ""


def check_python_syntax(path: Path) -> Tuple[bool, str]:
    """Compile Python sources without running them; other files pass."""
    if path.suffix != ".py":
        return True, ""
    try:
        compile(path.read_bytes(), str(path), "exec", dont_inherit=True)
    except SyntaxError as e:
        return False, f"syntax error at line {e.lineno}: {e.msg}"
    except ValueError as e:
        return False, str(e)
    return True, ""


def command_check(argv: Sequence[str], timeout: float = 60.0) -> CheckFunction:
    """Build a check that runs an external command with the file path appended.

    A non-zero exit status fails the file, with stderr (or stdout) as reason.
    Useful for syntax checkers of script languages, e.g.
    ``command_check(["bash", "-n"])``.
    """
    base = list(argv)

    def check(path: Path) -> Tuple[bool, str]:
        try:
            proc = subprocess.run(
                [*base, str(path)],
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return False, f"{base[0]} timed out after {timeout}s"
        except OSError as e:
            return False, f"could not run {base[0]}: {e}"
        if proc.returncode != 0:
            reason = (proc.stderr or proc.stdout).strip() or f"exit status {proc.returncode}"
            return False, reason
        return True, ""

    return check


def check_all(*checks: CheckFunction) -> CheckFunction:
    """Combine checks; the first failing one decides the reason."""

    def check(path: Path) -> Tuple[bool, str]:
        for single in checks:
            ok, reason = single(path)
            if not ok:
                return False, reason
        return True, ""

    return check
