from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

import pytz
from termcolor import colored
from tqdm import tqdm

from iamadmins.models import AdminFinding


SCHEMA_VERSION = 1
TOOL_NAME = "AWS IAM Admin Review"

HEADER = ("IDENTITY_ARN", "POLICY_TYPE", "POLICY_NAME", "ASSIGNMENT")
NO_FINDINGS_MARKER = "No administrative identities found"
INTERRUPTED_MARKER = "Audit interrupted: partial results"

DEFAULT_TIMEZONE = "America/Bogota"
ADMIN_REPORT_DIR = "IAM_admins_report"
ADMIN_REPORT_PREFIX = "iam_admin_identities"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _atomic_write(path: str, writer: Callable) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8", newline="") as f:
        writer(f)
    os.replace(tmp_path, path)


def atomic_write_json(path: str, obj: Any) -> None:
    def _dump(f) -> None:
        json.dump(obj, f, indent=2, sort_keys=False, default=str)
        f.write("\n")

    _atomic_write(path, _dump)


def atomic_write_text(path: str, text: str) -> None:
    _atomic_write(path, lambda f: f.write(text))


@dataclass
class Target:
    target_type: str
    target_id: str
    label: Optional[str] = None
    data: Optional[dict] = None

    def to_dict(self) -> dict:
        out = {"target_type": self.target_type, "target_id": self.target_id}
        if self.label:
            out["label"] = self.label
        if self.data is not None:
            out["data"] = self.data
        return out


def _count_nested_errors(targets: list[dict]) -> int:
    total = 0
    for t in targets:
        data = t.get("data")
        if isinstance(data, dict):
            errs = data.get("errors")
            if isinstance(errs, list):
                total += len(errs)
    return total


def build_report(
    *,
    provider: str,
    targets: list[dict],
    errors: Optional[list[dict]] = None,
    extra_summary: Optional[dict] = None,
) -> dict:
    errors = errors or []
    summary = {
        "total_targets": len(targets),
        "top_level_errors": len(errors),
        "target_errors": _count_nested_errors(targets),
        "errors": len(errors) + _count_nested_errors(targets),
    }
    if extra_summary:
        summary.update(extra_summary)

    report = {
        "tool": TOOL_NAME,
        "schema_version": SCHEMA_VERSION,
        "provider": provider,
        "generated_at": utc_now_iso(),
        "targets": targets,
        "summary": summary,
    }
    if errors:
        report["errors"] = errors
    return report


#########################
#### RUN TIMESTAMPS  ####
#########################

def local_now(tz_name: str, now: Optional[datetime] = None) -> datetime:
    """Raises pytz.UnknownTimeZoneError for unknown zone names."""
    tz = pytz.timezone(tz_name)
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz)


def gmt_offset(moment: datetime) -> str:
    # "+0530" -> "+05": only whole hours go in file names
    return moment.strftime("%z")[:3]


def run_stamp(moment: datetime) -> str:
    return f"{moment.strftime('%Y%m%d_%H%M%S')}_GMT{gmt_offset(moment)}"


def artifact_path(output_dir: str, prefix: str, moment: datetime, extension: str = "txt") -> str:
    return os.path.join(output_dir, f"{prefix}_{run_stamp(moment)}.{extension}")


#########################
####  TABLE OUTPUT   ####
#########################

def format_table(rows: Sequence[Sequence[str]], separator: str = "  ") -> str:
    """Align columns on the widest cell, leaving the last column unpadded."""
    if not rows:
        return ""
    n_cols = max(len(r) for r in rows)
    widths = [0] * n_cols
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    lines = []
    for row in rows:
        cells = [cell.ljust(widths[i]) if i < len(row) - 1 else cell for i, cell in enumerate(row)]
        lines.append(separator.join(cells).rstrip())
    return "\n".join(lines) + "\n"


def render_live(finding: AdminFinding) -> str:
    arn, policy_type, policy_name, assignment = finding.row()
    assignment_color = "cyan" if finding.grant_path.is_direct else "magenta"
    return f"{colored(arn, 'green')}  {policy_type}  {colored(policy_name, 'red')}  {colored(assignment, assignment_color)}"


class ReportSink:
    """
    Single owner of the audit's findings.

    `emit` records a finding and shows it on the live channel straight away;
    `finalize` persists every recorded finding as one table. Findings are ordered
    by the caller-supplied sequence key (then arrival), so concurrent producers
    still yield a deterministic artifact. Only a re-emitted finding (same key,
    same finding) is dropped.

    A sink marked interrupted never writes the no-findings marker: its artifact
    ends with an explicit partial-results line instead.
    """

    def __init__(self, path: str, *, live: bool = True, writer: Optional[Callable[[str], None]] = None) -> None:
        self.path = path
        self._live = live
        self._write = writer or tqdm.write
        self._lock = threading.Lock()
        self._entries: list[tuple[tuple, int, AdminFinding]] = []
        self._interrupted = False
        self._finalized = False

    def start(self) -> None:
        if self._live:
            self._write(colored("  ".join(HEADER), attrs=["bold"]))

    def emit(self, finding: AdminFinding, key: tuple = ()) -> None:
        with self._lock:
            self._entries.append((key, len(self._entries), finding))
            if self._live:
                self._write(render_live(finding))

    def mark_interrupted(self) -> None:
        with self._lock:
            self._interrupted = True

    @property
    def interrupted(self) -> bool:
        with self._lock:
            return self._interrupted

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def findings(self) -> list[AdminFinding]:
        with self._lock:
            entries = sorted(self._entries, key=lambda e: (e[0], e[1]))
        seen = set()
        out = []
        for key, _, finding in entries:
            if (key, finding) in seen:
                continue
            seen.add((key, finding))
            out.append(finding)
        return out

    def render(self) -> str:
        findings = self.findings
        if not findings:
            return f"{INTERRUPTED_MARKER if self.interrupted else NO_FINDINGS_MARKER}\n"
        text = format_table([HEADER] + [f.row() for f in findings])
        if self.interrupted:
            text += f"{INTERRUPTED_MARKER}\n"
        return text

    def finalize(self) -> str:
        if self._finalized:
            return self.path
        atomic_write_text(self.path, self.render())
        self._finalized = True
        return self.path
