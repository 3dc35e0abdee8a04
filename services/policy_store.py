"""
Policy Store - Persistence for learned exploration values

Three implementations of the PolicyStore contract:
- InMemoryPolicyStore: dict-backed, for tests and throwaway runs
- SQLitePolicyStore: durable store shared by every run on this host
- WriteBehindPolicyStore: wraps another store and moves writes onto a
  background thread so the exploration loop never blocks on disk I/O

Keys are "screenHash|actionKey" strings. Values are tagged with the package
they were learned for so one database can serve many apps.
"""

import logging
import sqlite3
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Set

from config.defaults import Defaults
from utils.error_handler import PolicyStoreError

logger = logging.getLogger(__name__)


class InMemoryPolicyStore:
    """Dict-backed store. Nothing survives the process."""

    def __init__(self):
        self._lock = Lock()
        self.q_values: Dict[str, float] = {}
        self.q_packages: Dict[str, Optional[str]] = {}
        self.visit_counts: Dict[str, int] = {}
        self.screen_visits: Dict[str, int] = {}
        self.human_feedback: Dict[str, int] = {}
        self.dangerous: Dict[str, Optional[str]] = {}
        self.best_strategies: Dict[str, tuple] = {}

    def _matches(self, key: str, package: Optional[str]) -> bool:
        return package is None or self.q_packages.get(key) in (package, None)

    def get_q_value(self, key: str) -> Optional[float]:
        return self.q_values.get(key)

    def get_all_q_values(self, package: Optional[str] = None) -> Dict[str, float]:
        with self._lock:
            return {k: v for k, v in self.q_values.items() if self._matches(k, package)}

    def upsert_q_value(self, key: str, q_value: float, package: Optional[str] = None) -> None:
        with self._lock:
            self.q_values[key] = q_value
            self.q_packages[key] = package

    def increment_visit_count(self, key: str) -> int:
        with self._lock:
            self.visit_counts[key] = self.visit_counts.get(key, 0) + 1
            return self.visit_counts[key]

    def get_visit_count(self, key: str) -> int:
        return self.visit_counts.get(key, 0)

    def get_all_visit_counts(self, package: Optional[str] = None) -> Dict[str, int]:
        with self._lock:
            return {k: v for k, v in self.visit_counts.items() if self._matches(k, package)}

    def add_dangerous_pattern(self, pattern: str, package: Optional[str] = None) -> None:
        with self._lock:
            self.dangerous[pattern] = package

    def get_dangerous_patterns(self, package: Optional[str] = None) -> Set[str]:
        with self._lock:
            return {
                p for p, pkg in self.dangerous.items() if package is None or pkg in (package, None)
            }

    def increment_screen_visit(self, screen_hash: str, package: Optional[str] = None) -> int:
        with self._lock:
            self.screen_visits[screen_hash] = self.screen_visits.get(screen_hash, 0) + 1
            return self.screen_visits[screen_hash]

    def get_screen_visit_count(self, screen_hash: str) -> int:
        return self.screen_visits.get(screen_hash, 0)

    def set_human_feedback(self, key: str, value: int) -> None:
        with self._lock:
            if value:
                self.human_feedback[key] = value
            else:
                self.human_feedback.pop(key, None)

    def get_human_feedback(self, key: str) -> Optional[int]:
        return self.human_feedback.get(key)

    def record_best_strategy(self, package: str, strategy: str, score: float) -> None:
        with self._lock:
            self.best_strategies[package] = (strategy, score)

    def get_best_strategy(self, package: str) -> Optional[str]:
        entry = self.best_strategies.get(package)
        return entry[0] if entry else None


class SQLitePolicyStore:
    """
    SQLite-backed policy store.

    Every call opens its own connection so the store can be used from the
    write-behind thread and the event loop thread alike; a process-wide lock
    serializes writers.

    Usage:
        store = SQLitePolicyStore("data/exploration_policy.db")
        policy = ExplorationQLearning(store=store, package_name="com.example.app")
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path or Defaults.POLICY_DB_PATH)
        self._lock = Lock()
        self._init_db()
        logger.info(f"[SQLitePolicyStore] Initialized with DB at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), timeout=10)

    def _init_db(self):
        """Initialize SQLite database"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS q_table (
                        key TEXT PRIMARY KEY,
                        q_value REAL NOT NULL,
                        visit_count INTEGER DEFAULT 0,
                        package TEXT,
                        updated_at REAL
                    )
                """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS screen_visits (
                        screen_hash TEXT PRIMARY KEY,
                        visit_count INTEGER DEFAULT 0,
                        package TEXT
                    )
                """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS human_feedback (
                        key TEXT PRIMARY KEY,
                        value INTEGER NOT NULL,
                        updated_at REAL
                    )
                """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS dangerous_patterns (
                        pattern TEXT NOT NULL,
                        package TEXT NOT NULL DEFAULT '',
                        created_at REAL,
                        PRIMARY KEY (pattern, package)
                    )
                """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS best_strategy (
                        package TEXT PRIMARY KEY,
                        strategy TEXT NOT NULL,
                        score REAL,
                        updated_at REAL
                    )
                """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_q_package ON q_table(package)")
                conn.commit()
        except sqlite3.Error as e:
            raise PolicyStoreError(f"Cannot initialize {self.db_path}: {e}") from e

    def _execute(self, sql: str, params: tuple = (), key: Optional[str] = None) -> List[tuple]:
        try:
            with self._lock:
                with self._connect() as conn:
                    rows = conn.execute(sql, params).fetchall()
                    conn.commit()
                    return rows
        except sqlite3.Error as e:
            raise PolicyStoreError(f"Policy store query failed: {e}", key=key) from e

    # =========================================================================
    # Q-values
    # =========================================================================

    def get_q_value(self, key: str) -> Optional[float]:
        rows = self._execute("SELECT q_value FROM q_table WHERE key = ?", (key,), key)
        return rows[0][0] if rows else None

    def get_all_q_values(self, package: Optional[str] = None) -> Dict[str, float]:
        if package is None:
            rows = self._execute("SELECT key, q_value FROM q_table")
        else:
            rows = self._execute(
                "SELECT key, q_value FROM q_table WHERE package = ? OR package IS NULL",
                (package,),
            )
        return {key: value for key, value in rows}

    def upsert_q_value(self, key: str, q_value: float, package: Optional[str] = None) -> None:
        self._execute(
            """
            INSERT INTO q_table (key, q_value, package, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                q_value = excluded.q_value,
                package = COALESCE(excluded.package, q_table.package),
                updated_at = excluded.updated_at
        """,
            (key, q_value, package, time.time()),
            key,
        )

    # =========================================================================
    # Visit counts
    # =========================================================================

    def increment_visit_count(self, key: str) -> int:
        self._execute(
            """
            INSERT INTO q_table (key, q_value, visit_count, updated_at) VALUES (?, 0, 1, ?)
            ON CONFLICT(key) DO UPDATE SET visit_count = q_table.visit_count + 1
        """,
            (key, time.time()),
            key,
        )
        return self.get_visit_count(key)

    def get_visit_count(self, key: str) -> int:
        rows = self._execute("SELECT visit_count FROM q_table WHERE key = ?", (key,), key)
        return rows[0][0] if rows else 0

    def get_all_visit_counts(self, package: Optional[str] = None) -> Dict[str, int]:
        if package is None:
            rows = self._execute("SELECT key, visit_count FROM q_table WHERE visit_count > 0")
        else:
            rows = self._execute(
                "SELECT key, visit_count FROM q_table "
                "WHERE visit_count > 0 AND (package = ? OR package IS NULL)",
                (package,),
            )
        return {key: count for key, count in rows}

    def increment_screen_visit(self, screen_hash: str, package: Optional[str] = None) -> int:
        self._execute(
            """
            INSERT INTO screen_visits (screen_hash, visit_count, package) VALUES (?, 1, ?)
            ON CONFLICT(screen_hash) DO UPDATE SET visit_count = screen_visits.visit_count + 1
        """,
            (screen_hash, package),
            screen_hash,
        )
        return self.get_screen_visit_count(screen_hash)

    def get_screen_visit_count(self, screen_hash: str) -> int:
        rows = self._execute(
            "SELECT visit_count FROM screen_visits WHERE screen_hash = ?",
            (screen_hash,),
            screen_hash,
        )
        return rows[0][0] if rows else 0

    # =========================================================================
    # Danger / feedback / strategy
    # =========================================================================

    def add_dangerous_pattern(self, pattern: str, package: Optional[str] = None) -> None:
        self._execute(
            "INSERT OR IGNORE INTO dangerous_patterns (pattern, package, created_at) "
            "VALUES (?, ?, ?)",
            (pattern, package or "", time.time()),
            pattern,
        )

    def get_dangerous_patterns(self, package: Optional[str] = None) -> Set[str]:
        if package is None:
            rows = self._execute("SELECT pattern FROM dangerous_patterns")
        else:
            rows = self._execute(
                "SELECT pattern FROM dangerous_patterns WHERE package = ? OR package = ''",
                (package,),
            )
        return {row[0] for row in rows}

    def set_human_feedback(self, key: str, value: int) -> None:
        if value:
            self._execute(
                "INSERT OR REPLACE INTO human_feedback (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, time.time()),
                key,
            )
        else:
            self._execute("DELETE FROM human_feedback WHERE key = ?", (key,), key)

    def get_human_feedback(self, key: str) -> Optional[int]:
        rows = self._execute("SELECT value FROM human_feedback WHERE key = ?", (key,), key)
        return rows[0][0] if rows else None

    def record_best_strategy(self, package: str, strategy: str, score: float) -> None:
        self._execute(
            "INSERT OR REPLACE INTO best_strategy (package, strategy, score, updated_at) "
            "VALUES (?, ?, ?, ?)",
            (package, strategy, score, time.time()),
            package,
        )

    def get_best_strategy(self, package: str) -> Optional[str]:
        rows = self._execute(
            "SELECT strategy FROM best_strategy WHERE package = ?", (package,), package
        )
        return rows[0][0] if rows else None

    def get_stats(self) -> Dict[str, int]:
        """Row counts per table"""
        return {
            table: self._execute(f"SELECT COUNT(*) FROM {table}")[0][0]
            for table in (
                "q_table",
                "screen_visits",
                "human_feedback",
                "dangerous_patterns",
                "best_strategy",
            )
        }


class WriteBehindPolicyStore:
    """
    Write-behind wrapper around another PolicyStore.

    Writes are submitted to a single-thread executor in call order and
    return immediately; reads go straight to the wrapped store. Failures on
    the background thread are logged and counted, never raised into the
    exploration loop. Call flush() before reading back something just
    written, and close() on shutdown.
    """

    WRITE_OPERATIONS = (
        "upsert_q_value",
        "increment_visit_count",
        "add_dangerous_pattern",
        "increment_screen_visit",
        "set_human_feedback",
        "record_best_strategy",
    )

    def __init__(self, inner, max_workers: Optional[int] = None):
        self.inner = inner
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers or Defaults.POLICY_WRITER_THREADS,
            thread_name_prefix="policy-writer",
        )
        self._pending: List[Future] = []
        self._lock = Lock()
        self.failed_writes = 0
        self.closed = False

    def _submit(self, operation: str, *args):
        if self.closed:
            raise PolicyStoreError(f"Store closed, cannot {operation}")

        def _write_task():
            try:
                getattr(self.inner, operation)(*args)
            except PolicyStoreError as e:
                self.failed_writes += 1
                logger.warning(f"[WriteBehindPolicyStore] {operation} failed: {e.message}")

        future = self.executor.submit(_write_task)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return None

    def __getattr__(self, name: str):
        if name in self.WRITE_OPERATIONS:
            return lambda *args: self._submit(name, *args)
        return getattr(self.inner, name)

    @property
    def pending_writes(self) -> int:
        with self._lock:
            return sum(1 for f in self._pending if not f.done())

    def flush(self, timeout: Optional[float] = None):
        """Block until every submitted write has been applied"""
        with self._lock:
            pending = list(self._pending)
            self._pending = []
        for future in pending:
            future.result(timeout=timeout)

    def close(self):
        if self.closed:
            return
        self.flush()
        self.closed = True
        self.executor.shutdown(wait=True)
        logger.info(
            f"[WriteBehindPolicyStore] Closed ({self.failed_writes} failed writes)"
        )


def create_policy_store(db_path: Optional[str] = None, write_behind: Optional[bool] = None):
    """SQLite store, wrapped for write-behind when configured"""
    store = SQLitePolicyStore(db_path)
    if write_behind is None:
        write_behind = Defaults.POLICY_WRITE_BEHIND
    if write_behind:
        return WriteBehindPolicyStore(store)
    return store
