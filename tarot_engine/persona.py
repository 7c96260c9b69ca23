"""Per-subject theme weights ("persona") stored in SQLite.

Signed-in users and anonymous sessions live in separate tables with identical
behaviour. Weights are kept within [min_weight, max_weight] on every write.

Decay is applied lazily on read: a row untouched for ``days`` whole days is
multiplied by ``decay_rate ** days`` (never below the floor) and its
``updated_at`` advances by exactly those days, so the fractional remainder
carries over to the next read. ``apply_decay_all`` runs the same rule as a
scheduled sweep.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .catalog import CatalogStore
from .errors import UnknownTheme
from .models import Card, PersonaVector, PersonaWeight, Vote

log = logging.getLogger("tarot.persona")

SECONDS_PER_DAY = 24 * 3600

_TABLES = {False: "persona_weights", True: "anonymous_persona_weights"}


@dataclass
class DecaySweepResult:
    subjects: int = 0
    rows_decayed: int = 0
    errors: int = 0


class PersonaStore:
    def __init__(
        self,
        db_path: str,
        catalog: CatalogStore,
        decay_rate: float = 0.95,
        default_weight: float = 0.5,
        min_weight: float = 0.1,
        max_weight: float = 1.0,
        feedback_delta: float = 0.1,
        clock: Callable[[], float] = time.time,
    ):
        if min_weight > max_weight:
            raise ValueError("min_weight must not exceed max_weight")
        self.db_path = db_path
        self.catalog = catalog
        self.decay_rate = decay_rate
        self.default_weight = default_weight
        self.min_weight = min_weight
        self.max_weight = max_weight
        self.feedback_delta = feedback_delta
        self._clock = clock
        self._init_db()

    @classmethod
    def from_settings(cls, settings, catalog: CatalogStore, clock: Callable[[], float] = time.time) -> "PersonaStore":
        return cls(
            settings.persona_db_path,
            catalog,
            decay_rate=settings.decay_rate,
            default_weight=settings.default_weight,
            min_weight=settings.min_weight,
            max_weight=settings.max_weight,
            feedback_delta=settings.feedback_delta,
            clock=clock,
        )

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; write paths open their own IMMEDIATE transaction.
        return sqlite3.connect(self.db_path, isolation_level=None, timeout=10)

    def _init_db(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            for table in _TABLES.values():
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        subject_id TEXT NOT NULL,
                        theme_id TEXT NOT NULL,
                        weight REAL NOT NULL,
                        updated_at REAL NOT NULL,
                        PRIMARY KEY (subject_id, theme_id)
                    )
                """)
        finally:
            conn.close()

    @staticmethod
    def _rows(conn: sqlite3.Connection, table: str, subject_id: str) -> List[PersonaWeight]:
        cursor = conn.execute(
            f"SELECT theme_id, weight, updated_at FROM {table} WHERE subject_id = ?",
            (subject_id,),
        )
        return [
            PersonaWeight(subject_id=subject_id, theme_id=theme_id, weight=weight, updated_at=updated_at)
            for theme_id, weight, updated_at in cursor.fetchall()
        ]

    def clamp(self, weight: float) -> float:
        return min(self.max_weight, max(self.min_weight, round(weight, 4)))

    def decayed(self, weight: float, updated_at: float, now: float) -> Optional[Tuple[float, float]]:
        """Return ``(weight, updated_at)`` after decay, or None when nothing changes."""
        days = int((now - updated_at) // SECONDS_PER_DAY)
        if days < 1 or weight <= self.min_weight:
            return None
        new_weight = max(self.min_weight, round(weight * self.decay_rate ** days, 4))
        return new_weight, updated_at + days * SECONDS_PER_DAY

    def get_persona(self, subject_id: str, is_anonymous: bool = False) -> PersonaVector:
        table = _TABLES[is_anonymous]
        now = self._clock()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            rows = self._rows(conn, table, subject_id)

            fresh = not rows
            weights: Dict[str, float] = {}
            for row in rows:
                weight = row.weight
                decayed = self.decayed(row.weight, row.updated_at, now)
                if decayed is not None:
                    weight, new_updated_at = decayed
                    conn.execute(
                        f"UPDATE {table} SET weight = ?, updated_at = ? WHERE subject_id = ? AND theme_id = ?",
                        (weight, new_updated_at, subject_id, row.theme_id),
                    )
                    log.info("theme weight change subject=%s theme=%s weight=%.4f reason=decay",
                             subject_id, row.theme_id, weight)
                weights[row.theme_id] = weight

            # New catalog themes (or a brand-new subject) start at the default weight.
            missing = [t for t in self.catalog.theme_ids() if t not in weights]
            conn.executemany(
                f"INSERT OR IGNORE INTO {table} (subject_id, theme_id, weight, updated_at) VALUES (?, ?, ?, ?)",
                [(subject_id, t, self.default_weight, now) for t in missing],
            )
            for t in missing:
                weights[t] = self.default_weight
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        if fresh:
            log.info("Initialized persona for subject=%s with %d themes", subject_id, len(weights))
        return PersonaVector(subject_id=subject_id, is_anonymous=is_anonymous, weights=weights, fresh=fresh)

    def update_theme_weight(
        self,
        subject_id: str,
        theme_id: str,
        delta: float,
        is_anonymous: bool = False,
        reason: str = "adjust",
    ) -> float:
        """Add ``delta`` to one theme weight and clamp it to the configured bounds.

        The read-modify-write runs inside an IMMEDIATE transaction, so
        concurrent feedback on the same store is serialized by SQLite's
        writer lock and no update is lost. Pending decay is folded in first.
        """
        if not self.catalog.has_theme(theme_id):
            raise UnknownTheme(f"Unknown theme id: {theme_id}")

        table = _TABLES[is_anonymous]
        now = self._clock()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"SELECT weight, updated_at FROM {table} WHERE subject_id = ? AND theme_id = ?",
                (subject_id, theme_id),
            ).fetchone()
            current = self.default_weight
            if row is not None:
                current = row[0]
                decayed = self.decayed(row[0], row[1], now)
                if decayed is not None:
                    current = decayed[0]
            new_weight = self.clamp(current + delta)
            conn.execute(
                f"INSERT INTO {table} (subject_id, theme_id, weight, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(subject_id, theme_id) DO UPDATE SET weight = excluded.weight, "
                "updated_at = excluded.updated_at",
                (subject_id, theme_id, new_weight, now),
            )
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        log.info("theme weight change subject=%s theme=%s weight=%.4f reason=%s",
                 subject_id, theme_id, new_weight, reason)
        return new_weight

    def apply_feedback(self, subject_id: str, theme_id: str, vote: Vote, is_anonymous: bool = False) -> float:
        delta = self.feedback_delta if vote == "up" else -self.feedback_delta
        reason = "upvote" if vote == "up" else "downvote"
        return self.update_theme_weight(subject_id, theme_id, delta, is_anonymous=is_anonymous, reason=reason)

    def apply_reading_feedback(
        self,
        subject_id: str,
        cards: Iterable[Card],
        vote: Vote,
        is_anonymous: bool = False,
    ) -> Dict[str, float]:
        """Spread a vote on a whole reading over the dominant theme of each card.

        Each theme is adjusted at most once per call.
        """
        themes: List[str] = []
        for card in cards:
            theme_id = self.catalog.dominant_theme(card.id)
            if theme_id and theme_id not in themes:
                themes.append(theme_id)
        return {t: self.apply_feedback(subject_id, t, vote, is_anonymous=is_anonymous) for t in themes}

    def apply_decay(self, subject_id: str, is_anonymous: bool = False) -> int:
        table = _TABLES[is_anonymous]
        now = self._clock()
        changed = 0
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            for row in self._rows(conn, table, subject_id):
                decayed = self.decayed(row.weight, row.updated_at, now)
                if decayed is None:
                    continue
                conn.execute(
                    f"UPDATE {table} SET weight = ?, updated_at = ? WHERE subject_id = ? AND theme_id = ?",
                    (decayed[0], decayed[1], subject_id, row.theme_id),
                )
                changed += 1
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        return changed

    def subjects(self, is_anonymous: bool = False) -> List[str]:
        conn = self._connect()
        try:
            cursor = conn.execute(f"SELECT DISTINCT subject_id FROM {_TABLES[is_anonymous]} ORDER BY subject_id")
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()

    def apply_decay_all(self) -> DecaySweepResult:
        result = DecaySweepResult()
        for is_anonymous in (False, True):
            for subject_id in self.subjects(is_anonymous):
                try:
                    result.rows_decayed += self.apply_decay(subject_id, is_anonymous=is_anonymous)
                    result.subjects += 1
                except sqlite3.Error:
                    log.exception("Theme decay failed for subject=%s", subject_id)
                    result.errors += 1
        log.info("Theme decay sweep: subjects=%d rows=%d errors=%d",
                 result.subjects, result.rows_decayed, result.errors)
        return result

    def clear_subject(self, subject_id: str, is_anonymous: bool = False) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(f"DELETE FROM {_TABLES[is_anonymous]} WHERE subject_id = ?", (subject_id,))
            return cursor.rowcount
        finally:
            conn.close()
