"""Validation gate run against a candidate tree before anything is applied."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Tuple

from loguru import logger

from treesync.ignore_utils import DEFAULT_IGNORE_PATTERNS, matches_any, should_ignore_path
from treesync.sync.exceptions import ValidationFailure

# check(file_path) -> (ok, reason)
CheckFunction = Callable[[Path], Tuple[bool, str]]


@dataclass
class ValidationIssue:
    file_path: str
    error: str


@dataclass
class ValidationResult:
    """Aggregated outcome of running a check over every eligible file."""

    passed: bool
    checked: int = 0
    failures: List[ValidationIssue] = field(default_factory=list)

    @property
    def failure_pairs(self) -> List[Tuple[str, str]]:
        return [(issue.file_path, issue.error) for issue in self.failures]

    def raise_for_failure(self) -> None:
        """Raise ValidationFailure unless every eligible file passed."""
        if self.passed:
            return
        summary = "; ".join(f"{issue.file_path}: {issue.error}" for issue in self.failures[:5])
        if len(self.failures) > 5:
            summary += f" (and {len(self.failures) - 5} more)"
        raise ValidationFailure(summary, self.failure_pairs)


class ValidationGate:
    """
    Runs an injected per-file check against a candidate tree.

    Only files matching ``include_patterns`` are eligible. A tree with no
    eligible files does not pass.
    """

    def __init__(
        self,
        check: CheckFunction,
        include_patterns: Iterable[str] = ("*",),
        ignore_patterns: Optional[Iterable[str]] = None,
    ):
        self.check = check
        self.include_patterns = list(include_patterns)
        self.ignore_patterns: Set[str] = (
            set(ignore_patterns) if ignore_patterns is not None else set(DEFAULT_IGNORE_PATTERNS)
        )

    def eligible_files(self, candidate_root: Path) -> List[Tuple[str, Path]]:
        """Return (relative path, absolute path) for every file the check applies to."""
        eligible = []
        for path in sorted(candidate_root.rglob("*")):
            if not path.is_file() or should_ignore_path(path, candidate_root, self.ignore_patterns):
                continue
            rel_path = path.relative_to(candidate_root).as_posix()
            if matches_any(rel_path, self.include_patterns):
                eligible.append((rel_path, path))
        return eligible

    async def validate(self, candidate_root: Path) -> ValidationResult:
        """
        Validate every eligible file of the candidate tree.

        Args:
            candidate_root: Tree to validate

        Returns:
            ValidationResult; ``passed`` is False if any check failed or
            no eligible file was found
        """
        if not candidate_root.is_dir():
            return ValidationResult(
                passed=False,
                failures=[ValidationIssue(".", f"candidate root {candidate_root} is not a directory")],
            )

        eligible = self.eligible_files(candidate_root)
        if not eligible:
            logger.warning(
                f"No files matching {self.include_patterns} in {candidate_root}, refusing to pass"
            )
            return ValidationResult(
                passed=False,
                failures=[ValidationIssue(".", "no eligible files found to validate")],
            )

        failures = []
        for rel_path, path in eligible:
            try:
                ok, reason = self.check(path)
            except Exception as e:
                logger.exception(f"Check raised for {rel_path}")
                ok, reason = False, f"check raised {type(e).__name__}: {e}"

            if ok:
                logger.debug(f"Validated {rel_path}")
            else:
                logger.warning(f"Validation failed for {rel_path}: {reason}")
                failures.append(ValidationIssue(rel_path, reason or "check failed"))

        result = ValidationResult(passed=not failures, checked=len(eligible), failures=failures)
        logger.info(
            f"Validated {result.checked} files in {candidate_root}: "
            f"{'passed' if result.passed else f'{len(failures)} failed'}"
        )
        return result
