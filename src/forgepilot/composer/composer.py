"""
composer/composer.py — Change Composer

Owns the review → apply → rollback lifecycle for a batch of proposed file
changes. One composer instance works against one FileStore; every effect
is awaited in sequence, so no two changes ever interleave.

State machine:
    IDLE → COLLECTING (start_session) → REVIEWING (add_change)
         → APPLYING (apply_all) → COMPLETE (session ended)
                                → ERROR    (atomic batch failed, restored)
    any  → ROLLING_BACK (rollback_all) → IDLE

Apply modes:
  - best-effort (default): each change is applied on its own; a failing
    change is marked `error` and the batch continues.
  - atomic: every file the batch touches is snapshotted first. If any
    change raises, all touched files are restored to the snapshot in
    reverse order and a single AtomicApplyFailure is raised afterwards.

Usage:
    composer = ChangeComposer(store, atomic_mode=True)
    await composer.start_session("Add a settings page")
    await composer.add_changes(docs_from_the_model)
    report = await composer.apply_all()
    ...
    await composer.rollback_all()
"""

from __future__ import annotations

import inspect
import time
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from forgepilot.composer.changes import (
    ApplyReport,
    Change,
    ChangeStatus,
    ChangeType,
    RollbackEntry,
    RollbackReport,
    Session,
    SessionStatus,
    make_diff,
    normalise_change,
)
from forgepilot.composer.dependencies import DependencyResolver
from forgepilot.exceptions import (
    AtomicApplyFailure,
    DependencyUnmetError,
    UnknownChangeError,
    ValidationError,
)
from forgepilot.files.store import FileStore
from forgepilot.observability.logger import get_logger

log = get_logger(__name__)

Callback = Optional[Callable[..., Any]]


class ComposerState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    REVIEWING = "reviewing"
    APPLYING = "applying"
    ROLLING_BACK = "rolling_back"
    COMPLETE = "complete"
    ERROR = "error"


class ChangeComposer:
    """Dependency-ordered, optionally atomic, multi-file change applier."""

    def __init__(
        self,
        store: FileStore,
        atomic_mode: bool = False,
        max_session_history: int = 10,
        max_diff_lines: int = 100,
        auto_detect_dependencies: bool = True,
        preserve_originals: bool = True,
        on_session_start: Callback = None,
        on_session_end: Callback = None,
        on_change_applied: Callback = None,
        on_rollback: Callback = None,
        on_error: Callback = None,
        on_warning: Callback = None,
    ):
        self.store = store
        self.atomic_mode = atomic_mode
        self.max_session_history = max_session_history
        self.max_diff_lines = max_diff_lines
        self.preserve_originals = preserve_originals

        self.on_session_start = on_session_start
        self.on_session_end = on_session_end
        self.on_change_applied = on_change_applied
        self.on_rollback = on_rollback
        self.on_error = on_error
        self.on_warning = on_warning

        self.state = ComposerState.IDLE
        self.session: Optional[Session] = None
        self.history: list[Session] = []          # newest first
        self.pending: list[Change] = []           # not yet applied (pending or error)
        self.applied: list[Change] = []
        self.rollback_stack: list[RollbackEntry] = []
        self.resolver = DependencyResolver(auto_detect=auto_detect_dependencies)

    @classmethod
    def from_settings(cls, settings, store: FileStore, **callbacks) -> "ChangeComposer":
        cfg = settings.composer
        return cls(
            store=store,
            atomic_mode=cfg.atomic_mode,
            max_session_history=cfg.max_session_history,
            max_diff_lines=cfg.max_diff_lines,
            auto_detect_dependencies=cfg.auto_detect_dependencies,
            preserve_originals=cfg.preserve_originals,
            **callbacks,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _set_state(self, new: ComposerState) -> None:
        if new != self.state:
            log.debug("composer.state_change", new=new.value, prev=self.state.value)
            self.state = new

    async def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.error("composer.callback_failed", callback=name, error=str(e), error_type=type(e).__name__)

    def _pending_only(self) -> list[Change]:
        return [c for c in self.pending if c.status == ChangeStatus.PENDING]

    def _rebuild_graph(self) -> None:
        self.resolver.rebuild(self.pending)

    def _find(self, change_id: str) -> Change:
        for change in self.pending:
            if change.id == change_id:
                return change
        raise UnknownChangeError(change_id)

    def _archive(self, session: Session) -> None:
        if session.is_empty or any(s.id == session.id for s in self.history):
            return
        self.history.insert(0, session)
        del self.history[self.max_session_history :]

    # ─────────────────────────────────────────────────────────────────────────
    # Sessions
    # ─────────────────────────────────────────────────────────────────────────

    async def start_session(self, task_description: str = "") -> Session:
        if self.session is not None:
            if self.session.status == SessionStatus.ACTIVE:
                self.session.status = SessionStatus.ABANDONED
                self.session.ended_at = time.time()
            self._archive(self.session)

        self.session = Session(task_description=task_description)
        self.pending = []
        self.applied = []
        self.rollback_stack = []
        self._rebuild_graph()
        self._set_state(ComposerState.COLLECTING)
        log.info("composer.session_start", session_id=self.session.id, task=task_description[:80])
        await self._emit("on_session_start", self.session)
        return self.session

    async def end_session(self, status: SessionStatus | str = SessionStatus.COMPLETED) -> Optional[Session]:
        session = self.session
        if session is None:
            return None
        session.status = SessionStatus(status)
        session.ended_at = time.time()
        self._archive(session)
        self._set_state(ComposerState.COMPLETE)
        log.info(
            "composer.session_end",
            session_id=session.id,
            status=session.status.value,
            applied=len(session.applied_changes),
        )
        await self._emit("on_session_end", session)
        self.session = None
        return session

    # ─────────────────────────────────────────────────────────────────────────
    # Collecting
    # ─────────────────────────────────────────────────────────────────────────

    async def add_change(self, doc: dict[str, Any] | Change) -> Change:
        """
        Validate and queue one change. Raises ValidationError without
        queueing anything when the document is not a valid change.
        A change for a filename already queued replaces it in place.
        """
        change = normalise_change(doc)
        if self.session is None:
            await self.start_session()

        record = await self.store.find(change.filename)
        current = record.content if record is not None else None
        if change.original_content is None and self.preserve_originals:
            change.original_content = current
        before = current if current is not None else change.original_content
        if change.type == ChangeType.CREATE:
            change.diff = make_diff(change.filename, None, change.content, self.max_diff_lines)
        elif change.type == ChangeType.MODIFY:
            change.diff = make_diff(change.filename, before, change.content, self.max_diff_lines)
        elif change.type == ChangeType.DELETE:
            change.diff = make_diff(change.filename, before, None, self.max_diff_lines)
        else:
            change.diff = f"rename {change.filename} -> {change.new_filename}"

        for i, existing in enumerate(self.pending):
            if existing.filename == change.filename:
                self.pending[i] = change
                log.debug("composer.change_replaced", filename=change.filename, old_id=existing.id)
                break
        else:
            self.pending.append(change)

        self.session.changes = [c for c in self.session.changes if c.filename != change.filename]
        self.session.changes.append(change)
        self._rebuild_graph()
        self._set_state(ComposerState.REVIEWING)
        log.info("composer.change_added", change_id=change.id, filename=change.filename, type=change.type.value)
        return change

    async def add_changes(self, docs: Iterable[dict[str, Any] | Change]) -> list[Change]:
        """Queue every valid change; invalid ones are logged and skipped."""
        accepted: list[Change] = []
        for doc in docs:
            try:
                accepted.append(await self.add_change(doc))
            except ValidationError as e:
                log.warning("composer.change_skipped", error=str(e))
        return accepted

    # ─────────────────────────────────────────────────────────────────────────
    # Applying
    # ─────────────────────────────────────────────────────────────────────────

    async def _mutate(self, change: Change) -> None:
        if change.type == ChangeType.CREATE:
            await self.store.create(change.filename, change.content)
            await self.store.open(change.filename)
        elif change.type == ChangeType.MODIFY:
            await self.store.overwrite(change.filename, change.content)
        elif change.type == ChangeType.DELETE:
            await self.store.delete(change.filename)
        elif change.type == ChangeType.RENAME:
            await self.store.rename(change.filename, change.new_filename)

    def _mark_applied(self, change: Change, original: Optional[str]) -> None:
        change.status = ChangeStatus.APPLIED
        change.error = None
        change.applied_at = time.time()
        self.pending = [c for c in self.pending if c.id != change.id]
        self.applied.append(change)
        if self.session is not None:
            self.session.applied_changes.append(change)
        self.rollback_stack.append(
            RollbackEntry(
                change_id=change.id,
                filename=change.filename,
                type=change.type,
                original_content=original,
                applied_at=change.applied_at,
                new_filename=change.new_filename,
            )
        )

    async def apply_change(self, change_id: str) -> Optional[Change]:
        """
        Apply one queued change.

        In atomic mode a change whose dependencies are still pending is
        refused: a warning is logged and emitted, nothing is mutated and
        None is returned. A failing mutation marks the change `error`,
        fires on_error and re-raises.
        """
        change = self._find(change_id)

        if self.atomic_mode:
            unmet = self.resolver.unmet_dependencies(change, self._pending_only())
            if unmet:
                warning = DependencyUnmetError(change.filename, unmet)
                log.warning("composer.dependency_unmet", filename=change.filename, unmet=unmet)
                await self._emit("on_warning", str(warning))
                return None

        record = await self.store.find(change.filename)
        original = record.content if record is not None else None

        try:
            await self._mutate(change)
        except Exception as e:
            change.status = ChangeStatus.ERROR
            change.error = str(e)
            log.error(
                "composer.apply_failed",
                change_id=change.id,
                filename=change.filename,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._emit("on_error", e, change)
            raise

        self._mark_applied(change, original)
        self._rebuild_graph()
        log.info("composer.apply", change_id=change.id, filename=change.filename, type=change.type.value)
        await self._emit("on_change_applied", change)
        return change

    async def apply_all(self) -> ApplyReport:
        """
        Apply every pending change in dependency order.

        Best-effort mode returns a report of applied and failed changes.
        Atomic mode either applies everything or restores every touched
        file and raises AtomicApplyFailure.
        """
        batch = self._pending_only()
        if not batch:
            return ApplyReport(total=0, atomic=self.atomic_mode)

        self._set_state(ComposerState.APPLYING)
        ordered = self.resolver.get_ordered_changes()
        log.info("composer.apply_all", total=len(ordered), atomic=self.atomic_mode, cycles=len(self.resolver.cycles))

        if self.atomic_mode:
            report = await self._apply_atomic(ordered)
        else:
            report = await self._apply_best_effort(ordered)

        if not self._pending_only():
            await self.end_session(SessionStatus.COMPLETED)
        else:
            self._set_state(ComposerState.REVIEWING)
        return report

    async def _apply_best_effort(self, ordered: list[Change]) -> ApplyReport:
        report = ApplyReport(total=len(ordered), atomic=False)
        for change in ordered:
            try:
                await self.apply_change(change.id)
            except Exception:
                # apply_change already marked, logged and emitted the failure
                report.failed.append(change)
                continue
            report.applied.append(change)
        log.info("composer.apply_all_done", applied=len(report.applied), failed=len(report.failed), total=report.total)
        return report

    async def _apply_atomic(self, ordered: list[Change]) -> ApplyReport:
        # Pre-batch snapshot of every name the batch can touch
        touched: list[str] = []
        for change in ordered:
            for name in (change.filename, change.new_filename):
                if name and name not in touched:
                    touched.append(name)
        snapshot: dict[str, Optional[str]] = {}
        for name in touched:
            record = await self.store.find(name)
            snapshot[name] = record.content if record is not None else None

        done: list[Change] = []
        for change in ordered:
            try:
                await self._mutate(change)
            except Exception as e:
                log.error(
                    "composer.atomic_failed",
                    filename=change.filename,
                    error=str(e),
                    applied_before_failure=len(done),
                )
                rollback_errors = await self._restore_snapshot(snapshot, touched)
                for c in ordered:
                    c.status = ChangeStatus.PENDING
                change.status = ChangeStatus.ERROR
                change.error = str(e)
                self._rebuild_graph()
                self._set_state(ComposerState.ERROR)
                failure = AtomicApplyFailure(
                    change.filename,
                    e,
                    rolled_back=[c.filename for c in done],
                    rollback_errors=rollback_errors,
                )
                await self._emit("on_error", failure, change)
                raise failure from e
            done.append(change)

        for change in ordered:
            self._mark_applied(change, snapshot.get(change.filename))
            await self._emit("on_change_applied", change)
        self._rebuild_graph()
        log.info("composer.atomic_committed", applied=len(ordered))
        return ApplyReport(applied=list(ordered), total=len(ordered), atomic=True)

    async def _restore_snapshot(self, snapshot: dict[str, Optional[str]], touched: list[str]) -> list[str]:
        """Bring every touched name back to its pre-batch content, newest first."""
        errors: list[str] = []
        for name in reversed(touched):
            original = snapshot[name]
            try:
                record = await self.store.find(name)
                if original is None:
                    if record is not None:
                        await self.store.delete(name)
                elif record is None:
                    await self.store.create(name, original)
                elif record.content != original:
                    await self.store.overwrite(name, original)
            except Exception as e:
                log.error("composer.restore_failed", filename=name, error=str(e))
                errors.append(f"{name}: {e}")
        return errors

    # ─────────────────────────────────────────────────────────────────────────
    # Rollback / reject
    # ─────────────────────────────────────────────────────────────────────────

    async def rollback_all(self) -> RollbackReport:
        """
        Undo every applied change, most recent first. An empty rollback
        stack is a no-op: nothing is touched and no event fires.
        """
        report = RollbackReport()
        if not self.rollback_stack:
            return report

        self._set_state(ComposerState.ROLLING_BACK)
        log.info("composer.rollback_start", entries=len(self.rollback_stack))

        while self.rollback_stack:
            entry = self.rollback_stack.pop()
            try:
                await self._undo(entry)
                report.restored.append(entry)
            except Exception as e:
                log.error("composer.rollback_failed", filename=entry.filename, error=str(e))
                report.errors.append(f"{entry.filename}: {e}")

        self.applied = []
        if self.session is not None:
            self.session.status = SessionStatus.ROLLED_BACK
        log.info("composer.rollback_done", restored=len(report.restored), errors=len(report.errors))
        await self._emit("on_rollback")
        self._set_state(ComposerState.IDLE)
        return report

    async def _undo(self, entry: RollbackEntry) -> None:
        if entry.type == ChangeType.CREATE:
            if await self.store.find(entry.filename) is not None:
                await self.store.delete(entry.filename)
            return
        if entry.type == ChangeType.RENAME:
            await self.store.rename(entry.new_filename, entry.filename)
            return

        record = await self.store.find(entry.filename)
        if entry.original_content is None:
            if record is not None:
                await self.store.delete(entry.filename)
        elif record is None:
            await self.store.create(entry.filename, entry.original_content)
        else:
            await self.store.overwrite(entry.filename, entry.original_content)

    def reject_change(self, change_id: str) -> Change:
        change = self._find(change_id)
        change.status = ChangeStatus.REJECTED
        self.pending = [c for c in self.pending if c.id != change_id]
        self.resolver.remove(change.filename)
        log.info("composer.change_rejected", change_id=change_id, filename=change.filename)
        if not self.pending and self.session is not None:
            self._set_state(ComposerState.COLLECTING)
        return change

    def reject_all(self) -> list[Change]:
        rejected = [self.reject_change(c.id) for c in list(self.pending)]
        log.info("composer.all_rejected", count=len(rejected))
        return rejected

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def ordered_changes(self) -> list[Change]:
        return self.resolver.get_ordered_changes()

    def unmet_dependencies(self, change_id: str) -> list[str]:
        return self.resolver.unmet_dependencies(self._find(change_id), self._pending_only())

    def progress(self) -> dict[str, int]:
        applied, pending = len(self.applied), len(self.pending)
        return {"applied": applied, "pending": pending, "total": applied + pending}

    def continuation_context(self) -> dict[str, Any]:
        """What has been applied and what is still queued, for asking the agent for more."""

        def brief(c: Change) -> dict[str, str]:
            return {"filename": c.filename, "type": c.type.value, "description": c.description}

        return {
            "task": self.session.task_description if self.session else "",
            "applied": [brief(c) for c in self.applied],
            "pending": [brief(c) for c in self.pending],
        }

    def __repr__(self) -> str:
        return (
            f"<ChangeComposer state={self.state.value} pending={len(self.pending)} "
            f"applied={len(self.applied)} atomic={self.atomic_mode}>"
        )
