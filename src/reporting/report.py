"""Run reports for the test verb.

One report covers one apply, verify, destroy cycle of a document. It is
written twice: JSON for tooling and markdown for people. Both files share
the stem {timestamp}.{document}.{passed|failed}.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

PASSED = 'passed'
FAILED = 'failed'
SKIPPED = 'skipped'

_MARKS = {PASSED: '✅', FAILED: '❌', SKIPPED: '⏭️'}


@dataclass
class PhaseResult:
    """Result of a test phase."""
    name: str
    description: str
    status: str
    message: str = ''
    duration: float = 0.0
    details: dict = field(default_factory=dict)


@dataclass
class RunReport:
    """Phases of one test run, in the order they ran.

    Attributes:
        document: Document name
        report_dir: Directory the report files are written to
        phases: Recorded phases
        success: Overall result, set by finish()
    """
    document: str
    report_dir: Path
    phases: list[PhaseResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    _phase_started: dict[str, datetime] = field(default_factory=dict, repr=False)

    def start(self) -> None:
        self.started_at = datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def start_phase(self, name: str) -> None:
        """Start the clock for a phase recorded without an explicit duration."""
        self._phase_started[name] = datetime.now()

    def pass_phase(self, name: str, description: str, message: str = '',
                   duration: float = 0.0, details: Optional[dict] = None) -> None:
        self._add(PhaseResult(name, description, PASSED, message, duration, details or {}))

    def fail_phase(self, name: str, description: str, message: str = '',
                   duration: float = 0.0, details: Optional[dict] = None) -> None:
        self._add(PhaseResult(name, description, FAILED, message, duration, details or {}))

    def skip_phase(self, name: str, description: str, message: str = '') -> None:
        self._add(PhaseResult(name, description, SKIPPED, message))

    def _add(self, phase: PhaseResult) -> None:
        began = self._phase_started.pop(phase.name, None)
        if not phase.duration and began is not None:
            phase.duration = (datetime.now() - began).total_seconds()
        logger.debug(f"[report] {phase.name}: {phase.status} {phase.message}")
        self.phases.append(phase)

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    @property
    def error(self) -> Optional[str]:
        """Message of the first failed phase."""
        for phase in self.phases:
            if phase.status == FAILED and phase.message:
                return phase.message
        return None

    def finish(self, success: bool) -> list[Path]:
        """Finalize the run and write both report files.

        Returns:
            Paths of the JSON and markdown reports
        """
        self.finished_at = datetime.now()
        self.success = success

        stem = self._stem()
        json_path = self.report_dir / f'{stem}.json'
        md_path = self.report_dir / f'{stem}.md'
        json_path.write_text(json.dumps(self._record(), indent=2, default=str), encoding='utf-8')
        md_path.write_text(self.render_markdown(), encoding='utf-8')
        logger.info(f"Report written to {json_path}")
        return [json_path, md_path]

    def _stem(self) -> str:
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = PASSED if self.success else FAILED
        return f"{timestamp}.{self.document.replace('/', '-')}.{status}"

    def _record(self) -> dict[str, Any]:
        return {
            'document': self.document,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self.duration,
            'error': self.error,
            'phases': [asdict(p) for p in self.phases],
        }

    def _troubled_resources(self) -> list[dict]:
        """Failed and skipped resources from apply/destroy phase details."""
        troubled = []
        for phase in self.phases:
            for resource in phase.details.get('resources', []):
                if resource.get('status') in (FAILED, SKIPPED):
                    troubled.append({'phase': phase.name, **resource})
        return troubled

    def render_markdown(self) -> str:
        date = self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'
        lines = [
            f"# {self.document}",
            "",
            f"**Status**: {'PASSED' if self.success else 'FAILED'}",
            f"**Date**: {date}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Phases",
            "",
            "| Phase | Status | Duration | Message |",
            "|-------|--------|----------|---------|",
        ]
        for p in self.phases:
            message = p.message.replace('|', '\\|').replace('\n', ' ')
            lines.append(f"| {p.name} | {_MARKS.get(p.status, '?')} {p.status} | {p.duration:.1f}s | {message} |")

        troubled = self._troubled_resources()
        if troubled:
            lines.extend(["", "## Resources", ""])
            for r in troubled:
                reason = r.get('message', '')
                if r.get('cause'):
                    reason = f"{reason} (cause: {r['cause']})"
                lines.append(f"- `{r['address']}` {r['status']} during {r['phase']}: {reason}")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])
        return '\n'.join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Summary for --json-output."""
        result: dict[str, Any] = {
            'document': self.document,
            'success': self.success,
            'duration_seconds': round(self.duration, 1),
            'phases': [
                {'name': p.name, 'status': p.status, 'duration': round(p.duration, 1)}
                for p in self.phases
            ],
        }
        if not self.success and self.error:
            result['error'] = self.error
        return result
