"""
Compilation findings and lifecycle severity.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ErrorCode, RhodiError, VerificationError
from .models import DocStatus


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


# Severity of include/trace failures by lifecycle status. None means the
# failure is not reported at all.
_STATUS_SEVERITY: dict[DocStatus, Severity | None] = {
    DocStatus.NOTES: None,
    DocStatus.DRAFT: Severity.WARNING,
    DocStatus.PUBLISHED: Severity.ERROR,
    DocStatus.REVOKED: Severity.ERROR,
}


def severity_for_status(status: DocStatus) -> Severity | None:
    return _STATUS_SEVERITY[status]


@dataclass(frozen=True)
class Finding:
    severity: Severity
    code: ErrorCode
    subject: str
    message: str
    details: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_exception(cls, exc: RhodiError, severity: Severity, subject: str) -> "Finding":
        return cls(severity, exc.code, subject, exc.message, dict(exc.details))

    @classmethod
    def from_verification(cls, err: VerificationError, severity: Severity, subject: str) -> "Finding":
        return cls(severity, err.code, subject, err.message, dict(err.details))

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": self.code.value,
            "subject": self.subject,
            "message": self.message,
            "details": self.details,
        }


class HaltCompilation(Exception):
    """Internal: raised by ``CompilationReport.add`` when halting is enabled."""


@dataclass
class CompilationReport:
    """
    Ordered, de-duplicated findings of one compilation.

    When ``halt_on_error`` is set, the first error stops compilation and
    ``halted`` is True.
    """
    findings: list[Finding] = field(default_factory=list)
    halt_on_error: bool = False
    halted: bool = False
    traces_total: int = 0
    traces_verified: int = 0

    def add(self, finding: Finding) -> None:
        if finding in self.findings:
            return
        self.findings.append(finding)
        if finding.severity == Severity.ERROR and self.halt_on_error:
            self.halted = True
            raise HaltCompilation(finding.message)

    @property
    def errors(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def codes(self) -> list[ErrorCode]:
        return [f.code for f in self.findings]

    @property
    def solidity_score(self) -> float | None:
        """Share of traces whose evidence verified; None without traces."""
        if self.traces_total == 0:
            return None
        return self.traces_verified / self.traces_total

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "halted": self.halted,
            "findings": [f.to_dict() for f in self.findings],
            "traces_total": self.traces_total,
            "traces_verified": self.traces_verified,
            "solidity_score": self.solidity_score,
        }
