"""Backfill orchestration: sessions, then song effects, then playlist rollups."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
import logging
import sqlite3
import threading
from typing import Callable

from resonance.biometrics import BiometricHistory
from resonance.cancellation import CancellationToken, OperationCancelled
from resonance.config import LearningConfig, SessionConfig
from resonance.learning import LearningResult, SongImpactLearner
from resonance.playlist_impact import PlaylistImpactAggregator, PlaylistImpactResult
from resonance.sessions import ReconstructionResult, SessionReconstructor
from resonance.storage import LAST_FULL_BACKFILL, SESSION_RECONSTRUCTION, SONG_IMPACT, SQLiteStore

LOGGER = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


class BackfillState(str, Enum):
    IDLE = "idle"
    RECONSTRUCTING_SESSIONS = "reconstructingSessions"
    CALCULATING_SONG_IMPACTS = "calculatingSongImpacts"
    CALCULATING_PLAYLIST_IMPACTS = "calculatingPlaylistImpacts"
    COMPLETED = "completed"
    FAILED = "failed"


class BackfillMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class BackfillProgress:
    """Snapshot pushed to subscribers on every state change and batch commit."""

    state: BackfillState
    mode: BackfillMode | None = None
    message: str = ""
    sessions_created: int = 0
    events_processed: int = 0
    playlists_updated: int = 0
    error: str | None = None
    cancelled: bool = False


@dataclass(frozen=True)
class BackfillReport:
    mode: BackfillMode
    state: BackfillState
    started_at: datetime
    finished_at: datetime
    sessions: ReconstructionResult | None = None
    learning: LearningResult | None = None
    playlists: PlaylistImpactResult | None = None
    error: str | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state is BackfillState.COMPLETED


ProgressListener = Callable[[BackfillProgress], None]


class BackfillOrchestrator:
    """Runs the learning stages one at a time; a second trigger while running is ignored."""

    def __init__(
        self,
        store: SQLiteStore,
        biometrics: BiometricHistory,
        session_config: SessionConfig = SessionConfig(),
        learning_config: LearningConfig = LearningConfig(),
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.biometrics = biometrics
        self.session_config = session_config
        self.learning_config = learning_config
        self.clock = clock
        self._lock = threading.Lock()
        self._token: CancellationToken | None = None
        self._listeners: list[ProgressListener] = []
        self._progress = BackfillProgress(state=BackfillState.IDLE, message="Idle")

    @property
    def progress(self) -> BackfillProgress:
        return self._progress

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def cancel(self) -> None:
        token = self._token
        if token is not None:
            LOGGER.info("Backfill cancellation requested")
            token.cancel()

    def run_full_backfill(self) -> BackfillReport | None:
        return self._run(BackfillMode.FULL)

    def run_incremental_backfill(self) -> BackfillReport | None:
        return self._run(BackfillMode.INCREMENTAL)

    def _publish(self, **changes) -> None:
        self._progress = replace(self._progress, **changes)
        for listener in list(self._listeners):
            listener(self._progress)

    def _run(self, mode: BackfillMode) -> BackfillReport | None:
        if not self._lock.acquire(blocking=False):
            LOGGER.info("Backfill already running, ignoring %s trigger", mode.value)
            return None
        try:
            self._token = CancellationToken()
            return self._execute(mode, self._token)
        finally:
            self._token = None
            self._lock.release()

    def _execute(self, mode: BackfillMode, token: CancellationToken) -> BackfillReport:
        started_at = self.clock()
        sessions: ReconstructionResult | None = None
        learning: LearningResult | None = None
        playlists: PlaylistImpactResult | None = None
        self._progress = BackfillProgress(state=BackfillState.IDLE)
        self._publish(mode=mode, message=f"Starting {mode.value} backfill")

        def finish(state: BackfillState, message: str, error: str | None = None, cancelled: bool = False) -> BackfillReport:
            self._publish(state=state, message=message, error=error, cancelled=cancelled)
            return BackfillReport(
                mode=mode,
                state=state,
                started_at=started_at,
                finished_at=self.clock(),
                sessions=sessions,
                learning=learning,
                playlists=playlists,
                error=error,
                cancelled=cancelled,
            )

        LOGGER.info("Starting %s backfill", mode.value)
        try:
            token.raise_if_cancelled()
            if mode is BackfillMode.FULL:
                self.store.reset_derived_state()
                session_since = impact_since = None
            else:
                session_since = self.store.get_watermark(SESSION_RECONSTRUCTION)
                impact_since = self.store.get_watermark(SONG_IMPACT)

            self._publish(state=BackfillState.RECONSTRUCTING_SESSIONS, message="Reconstructing sessions")
            sessions = SessionReconstructor(
                self.store, self.biometrics, self.session_config, self.clock
            ).run(
                session_since,
                token,
                on_batch=lambda result: self._publish(sessions_created=result.sessions_created),
            )
            LOGGER.info(
                "Reconstructed %d sessions, extended %d (%d short clusters discarded, %d malformed events)",
                sessions.sessions_created,
                sessions.sessions_extended,
                sessions.clusters_discarded,
                sessions.malformed_events,
            )

            self._publish(
                state=BackfillState.CALCULATING_SONG_IMPACTS,
                message="Calculating song impacts",
                sessions_created=sessions.sessions_created,
            )
            learning = SongImpactLearner(self.store, self.learning_config, self.clock).run(
                impact_since,
                token,
                on_batch=lambda result: self._publish(events_processed=result.events_applied),
            )
            LOGGER.info("Applied %d playback events to song effects", learning.events_applied)

            self._publish(
                state=BackfillState.CALCULATING_PLAYLIST_IMPACTS,
                message="Calculating playlist impacts",
                events_processed=learning.events_applied,
            )
            playlists = PlaylistImpactAggregator(self.store).run(token)
            self._publish(playlists_updated=playlists.playlists_updated)

            if mode is BackfillMode.FULL:
                self.store.set_watermark(LAST_FULL_BACKFILL, self.clock())
        except OperationCancelled:
            LOGGER.warning("Backfill cancelled during %s", self._progress.state.value)
            return finish(BackfillState.FAILED, "Backfill cancelled", error=CANCELLED_REASON, cancelled=True)
        except sqlite3.Error as exc:
            LOGGER.exception("Backfill failed during %s", self._progress.state.value)
            return finish(BackfillState.FAILED, "Backfill failed", error=str(exc))

        LOGGER.info("Finished %s backfill", mode.value)
        return finish(BackfillState.COMPLETED, "Backfill completed")
