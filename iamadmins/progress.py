from __future__ import annotations

import threading
from typing import Callable, Optional, Sequence


class StageProgress:
    """
    Thread-safe progress over audited accounts.

    One tqdm bar counts accounts; each account advances through `stages` (one per
    identity kind) and contributes a fraction of a unit per stage, so the bar moves
    while long accounts are still being walked. The postfix shows how many
    accounts sit in each stage plus the running number of findings.
    """

    def __init__(
        self,
        *,
        total: int,
        desc: str,
        stages: Sequence[str],
        tqdm_factory: Optional[Callable] = None,
        unit: str = "account",
    ) -> None:
        self._lock = threading.Lock()
        self._stages = list(stages)
        self._stage_to_index = {name: i for i, name in enumerate(self._stages)}
        self._stage_weight = 1.0 / max(1, len(self._stages))
        self._task_stage: dict[int, str] = {}
        self._task_stage_index: dict[int, int] = {}
        self._findings = 0
        self._bar = tqdm_factory(total=total, desc=desc, unit=unit, leave=False) if tqdm_factory else None

    def set_stage(self, task_id: int, stage: str) -> None:
        with self._lock:
            prev_idx = self._task_stage_index.get(task_id, -1)
            new_idx = self._stage_to_index.get(stage, prev_idx)
            if new_idx > prev_idx:
                self._task_stage_index[task_id] = new_idx
                # Entering a stage completes the previous one
                if self._bar is not None and prev_idx >= 0:
                    self._bar.update((new_idx - prev_idx) * self._stage_weight)
            self._task_stage[task_id] = stage
            self._render_locked()

    def add_findings(self, count: int = 1) -> None:
        with self._lock:
            self._findings += count
            self._render_locked()

    def finish(self, task_id: int) -> None:
        with self._lock:
            prev_idx = self._task_stage_index.get(task_id, -1)
            self._task_stage[task_id] = "done"
            if self._bar is not None:
                done = max(0, prev_idx) * self._stage_weight
                remaining = max(0.0, 1.0 - done)
                if remaining:
                    self._bar.update(remaining)
            self._render_locked()

    def close(self) -> None:
        with self._lock:
            if self._bar is not None:
                self._bar.close()
                self._bar = None

    def _render_locked(self) -> None:
        if self._bar is None:
            return
        counts: dict[str, int] = {}
        for st in self._task_stage.values():
            counts[st] = counts.get(st, 0) + 1

        parts = [f"{key}:{counts[key]}" for key in self._stages if counts.get(key)]
        if counts.get("done"):
            parts.append(f"done:{counts['done']}")
        parts.append(f"findings:{self._findings}")
        self._bar.set_postfix_str(" ".join(parts), refresh=True)
