"""SQLite-backed storage for tasks, applications, and payments."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


class DuplicateApplicationError(Exception):
    """Raised when a tasker already has an application for the task."""


class DuplicatePaymentError(Exception):
    """Raised when attempting to insert a payment with a duplicate order_id."""


class PaymentNotFoundError(Exception):
    """Raised when a payment notification references an unknown order_id."""


class SelectionConflictError(Exception):
    """Raised when a concurrent write invalidated a tasker selection mid-transaction."""


class TransitionConflictError(Exception):
    """Raised when a guarded task transition no longer matches the stored state."""


def _columns_sql(columns: tuple[str, ...]) -> str:
    return ", ".join(columns)


def _placeholders(columns: tuple[str, ...]) -> str:
    return ", ".join("?" for _ in columns)


class TaskStore:
    """SQLite-backed storage for tasks, applications, and payments."""

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "customer_id",
        "title",
        "description",
        "category",
        "area",
        "min_payment",
        "max_payment",
        "start_date",
        "end_date",
        "status",
        "is_targeted",
        "targeted_tasker_id",
        "selected_tasker_id",
        "agreed_payment",
        "agreed_time",
        "selected_at",
        "advance_payment",
        "advance_payment_status",
        "advance_payment_date",
        "advance_payment_released_at",
        "payment_id",
        "tasker_confirmed",
        "tasker_completed_at",
        "customer_completed_at",
        "completion_photos",
        "completion_notes",
        "customer_rating",
        "customer_review",
        "tasker_rating_for_customer",
        "tasker_feedback",
        "cancellation_reason",
        "cancelled_by",
        "cancelled_at",
        "completed_at",
        "created_at",
    )
    _APPLICATION_COLUMNS: tuple[str, ...] = (
        "application_id",
        "task_id",
        "tasker_id",
        "proposed_payment",
        "note",
        "estimated_duration_hours",
        "available_start_date",
        "available_end_date",
        "status",
        "confirmed_by_tasker",
        "confirmed_time",
        "confirmed_payment",
        "created_at",
    )
    _PAYMENT_COLUMNS: tuple[str, ...] = (
        "order_id",
        "task_id",
        "customer_id",
        "tasker_id",
        "amount",
        "currency",
        "payment_type",
        "status",
        "provider_payment_id",
        "status_code",
        "status_message",
        "method",
        "failure_reason",
        "created_at",
        "processed_at",
    )

    _TASK_SELECT_BASE_SQL = "SELECT " + _columns_sql(_TASK_COLUMNS) + " FROM tasks"
    _APPLICATION_SELECT_BASE_SQL = (
        "SELECT " + _columns_sql(_APPLICATION_COLUMNS) + " FROM applications"
    )
    _PAYMENT_SELECT_BASE_SQL = "SELECT " + _columns_sql(_PAYMENT_COLUMNS) + " FROM payments"

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    category TEXT NOT NULL,
                    area TEXT NOT NULL,
                    min_payment INTEGER NOT NULL,
                    max_payment INTEGER NOT NULL,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    is_targeted INTEGER NOT NULL DEFAULT 0,
                    targeted_tasker_id TEXT,
                    selected_tasker_id TEXT,
                    agreed_payment INTEGER,
                    agreed_time TEXT,
                    selected_at TEXT,
                    advance_payment INTEGER,
                    advance_payment_status TEXT,
                    advance_payment_date TEXT,
                    advance_payment_released_at TEXT,
                    payment_id TEXT,
                    tasker_confirmed INTEGER NOT NULL DEFAULT 0,
                    tasker_completed_at TEXT,
                    customer_completed_at TEXT,
                    completion_photos TEXT NOT NULL DEFAULT '[]',
                    completion_notes TEXT,
                    customer_rating INTEGER,
                    customer_review TEXT,
                    tasker_rating_for_customer INTEGER,
                    tasker_feedback TEXT,
                    cancellation_reason TEXT,
                    cancelled_by TEXT,
                    cancelled_at TEXT,
                    completed_at TEXT,
                    created_at TEXT NOT NULL,
                    CHECK (min_payment <= max_payment),
                    CHECK (
                        status != 'scheduled'
                        OR (
                            selected_tasker_id IS NOT NULL
                            AND agreed_payment IS NOT NULL
                            AND agreed_time IS NOT NULL
                        )
                    )
                );

                CREATE INDEX IF NOT EXISTS idx_tasks_customer ON tasks (customer_id, status);
                CREATE INDEX IF NOT EXISTS idx_tasks_selected ON tasks (selected_tasker_id, status);
                CREATE INDEX IF NOT EXISTS idx_tasks_targeted ON tasks (targeted_tasker_id, status);

                CREATE TABLE IF NOT EXISTS applications (
                    application_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks (task_id),
                    tasker_id TEXT NOT NULL,
                    proposed_payment INTEGER NOT NULL,
                    note TEXT,
                    estimated_duration_hours REAL,
                    available_start_date TEXT,
                    available_end_date TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    confirmed_by_tasker INTEGER NOT NULL DEFAULT 0,
                    confirmed_time TEXT,
                    confirmed_payment INTEGER,
                    created_at TEXT NOT NULL,
                    UNIQUE(task_id, tasker_id)
                );

                CREATE INDEX IF NOT EXISTS idx_applications_tasker
                    ON applications (tasker_id, status);

                CREATE TABLE IF NOT EXISTS payments (
                    order_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks (task_id),
                    customer_id TEXT NOT NULL,
                    tasker_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    payment_type TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    provider_payment_id TEXT,
                    status_code TEXT,
                    status_message TEXT,
                    method TEXT,
                    failure_reason TEXT,
                    created_at TEXT NOT NULL,
                    processed_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_payments_task ON payments (task_id);
                """
            )
            self._db.commit()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE, rolling back on any exception."""
        with self._lock:
            self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            self._db.commit()

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        task = {column: row[column] for column in self._TASK_COLUMNS}
        task["is_targeted"] = bool(task["is_targeted"])
        task["tasker_confirmed"] = bool(task["tasker_confirmed"])
        task["completion_photos"] = json.loads(task["completion_photos"] or "[]")
        return task

    def _row_to_application(self, row: sqlite3.Row) -> dict[str, Any]:
        application = {column: row[column] for column in self._APPLICATION_COLUMNS}
        application["confirmed_by_tasker"] = bool(application["confirmed_by_tasker"])
        return application

    def _row_to_payment(self, row: sqlite3.Row) -> dict[str, Any]:
        return {column: row[column] for column in self._PAYMENT_COLUMNS}

    @staticmethod
    def _encode_task_value(column: str, value: Any) -> Any:
        if column == "completion_photos":
            return json.dumps(list(value or []))
        if column in ("is_targeted", "tasker_confirmed"):
            return 1 if value else 0
        return value

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a new task row."""
        values = tuple(
            self._encode_task_value(column, task_data[column]) for column in self._TASK_COLUMNS
        )
        query = (
            "INSERT INTO tasks ("
            + _columns_sql(self._TASK_COLUMNS)
            + ") VALUES ("
            + _placeholders(self._TASK_COLUMNS)
            + ")"
        )

        try:
            with self._transaction() as db:
                db.execute(query, values)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateTaskError(
                    f"A task with task_id={task_data['task_id']} already exists"
                ) from exc
            raise

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        with self._lock:
            cursor = self._db.execute(
                self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?",
                (task_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """Update task columns and return the number of affected rows."""
        if len(updates) == 0:
            return 0

        if any(column not in self._TASK_COLUMNS for column in updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = [
            self._encode_task_value(column, value) for column, value in updates.items()
        ]

        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        params.append(task_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)

        with self._transaction() as db:
            cursor = db.execute(query, params)
        return int(cursor.rowcount)

    def list_open_tasks(
        self,
        viewer_id: str | None,
        starts_after: str,
        category: str | None,
        area: str | None,
        min_payment: int | None,
        max_payment: int | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """
        List active tasks that can still be applied to.

        Targeted tasks are only included for their customer and targeted tasker.
        Payment filters apply to the task's max_payment.
        """
        query = self._TASK_SELECT_BASE_SQL
        clauses: list[str] = ["status = 'active'", "start_date > ?"]
        params: list[object] = [starts_after]

        if viewer_id is None:
            clauses.append("is_targeted = 0")
        else:
            clauses.append("(is_targeted = 0 OR customer_id = ? OR targeted_tasker_id = ?)")
            params.extend([viewer_id, viewer_id])
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        if area is not None:
            clauses.append("area = ?")
            params.append(area)
        if min_payment is not None:
            clauses.append("max_payment >= ?")
            params.append(min_payment)
        if max_payment is not None:
            clauses.append("max_payment <= ?")
            params.append(max_payment)

        query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        if limit is not None or offset is not None:
            query += " LIMIT ?"
            params.append(limit if limit is not None else -1)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_tasks_for_customer(self, customer_id: str, status: str | None) -> list[dict[str, Any]]:
        """List tasks posted by a customer, newest first."""
        query = self._TASK_SELECT_BASE_SQL + " WHERE customer_id = ?"
        params: list[object] = [customer_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_tasks_for_tasker(self, tasker_id: str, status: str | None) -> list[dict[str, Any]]:
        """List tasks where the tasker is selected or targeted, newest first."""
        query = (
            self._TASK_SELECT_BASE_SQL
            + " WHERE (selected_tasker_id = ? OR (targeted_tasker_id = ? AND is_targeted = 1))"
        )
        params: list[object] = [tasker_id, tasker_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks(self) -> int:
        """Count total tasks."""
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def insert_application(self, application_data: dict[str, Any]) -> None:
        """Insert an application. UNIQUE(task_id, tasker_id) rejects duplicates."""
        values = tuple(application_data[column] for column in self._APPLICATION_COLUMNS)
        query = (
            "INSERT INTO applications ("
            + _columns_sql(self._APPLICATION_COLUMNS)
            + ") VALUES ("
            + _placeholders(self._APPLICATION_COLUMNS)
            + ")"
        )

        try:
            with self._transaction() as db:
                db.execute(query, values)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateApplicationError(
                    "This tasker already applied for this task"
                ) from exc
            raise

    def get_application(self, application_id: str) -> dict[str, Any] | None:
        """Fetch an application by ID."""
        with self._lock:
            row = self._db.execute(
                self._APPLICATION_SELECT_BASE_SQL + " WHERE application_id = ?",
                (application_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_application(row)

    def get_application_for_tasker(self, task_id: str, tasker_id: str) -> dict[str, Any] | None:
        """Fetch the (unique) application of a tasker for a task."""
        with self._lock:
            row = self._db.execute(
                self._APPLICATION_SELECT_BASE_SQL + " WHERE task_id = ? AND tasker_id = ?",
                (task_id, tasker_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_application(row)

    def get_applications_for_task(
        self,
        task_id: str,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all applications for a task, newest first."""
        query = self._APPLICATION_SELECT_BASE_SQL + " WHERE task_id = ?"
        params: list[object] = [task_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_application(row) for row in rows]

    def get_applications_for_tasker(
        self,
        tasker_id: str,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all applications submitted by a tasker, newest first."""
        query = self._APPLICATION_SELECT_BASE_SQL + " WHERE tasker_id = ?"
        params: list[object] = [tasker_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_application(row) for row in rows]

    def count_applications(self, task_id: str) -> int:
        """Count applications for a task."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM applications WHERE task_id = ?",
                (task_id,),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def confirm_application_terms(
        self,
        application_id: str,
        confirmed_time: str,
        confirmed_payment: int,
    ) -> int:
        """Record the tasker's confirmed time/payment once, while the application is pending."""
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE applications SET confirmed_by_tasker = 1, confirmed_time = ?, "
                "confirmed_payment = ? "
                "WHERE application_id = ? AND status = 'pending' AND confirmed_by_tasker = 0",
                (confirmed_time, confirmed_payment, application_id),
            )
        return int(cursor.rowcount)

    def select_application(
        self,
        task_id: str,
        application_id: str,
        task_updates: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """
        Atomically assign the task and settle its applications.

        Within one transaction: the task receives task_updates (only while it is
        still active with no selected tasker), the winning application moves from
        pending to confirmed, and every other pending application is rejected.

        Returns the rejected applications as they were before rejection.

        Raises:
            SelectionConflictError: the task or application changed underneath
        """
        if any(column not in self._TASK_COLUMNS for column in task_updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in task_updates)
        task_params: list[object] = [
            self._encode_task_value(column, value) for column, value in task_updates.items()
        ]
        task_params.append(task_id)
        task_query = (
            "UPDATE tasks SET "
            + set_clause
            + " WHERE task_id = ? AND status = 'active' AND selected_tasker_id IS NULL"
        )  # nosec B608

        with self._transaction() as db:
            if db.execute(task_query, task_params).rowcount != 1:
                raise SelectionConflictError(f"Task {task_id} is no longer selectable")

            cursor = db.execute(
                "UPDATE applications SET status = 'confirmed' "
                "WHERE application_id = ? AND task_id = ? AND status = 'pending' "
                "AND confirmed_by_tasker = 1",
                (application_id, task_id),
            )
            if cursor.rowcount != 1:
                raise SelectionConflictError(f"Application {application_id} is no longer pending")

            rejected_rows = db.execute(
                self._APPLICATION_SELECT_BASE_SQL
                + " WHERE task_id = ? AND application_id != ? AND status = 'pending'",
                (task_id, application_id),
            ).fetchall()
            db.execute(
                "UPDATE applications SET status = 'rejected' "
                "WHERE task_id = ? AND application_id != ? AND status = 'pending'",
                (task_id, application_id),
            )

        return [self._row_to_application(row) for row in rejected_rows]

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def start_advance_payment(self, payment_data: dict[str, Any]) -> None:
        """
        Record a new advance payment and point the task at it.

        The task must still be active with a selected tasker and an
        advance that is not yet paid.

        Raises:
            DuplicatePaymentError: order_id already used
            TransitionConflictError: the task no longer accepts a payment
        """
        values = tuple(payment_data[column] for column in self._PAYMENT_COLUMNS)
        insert_query = (
            "INSERT INTO payments ("
            + _columns_sql(self._PAYMENT_COLUMNS)
            + ") VALUES ("
            + _placeholders(self._PAYMENT_COLUMNS)
            + ")"
        )

        try:
            with self._transaction() as db:
                db.execute(insert_query, values)
                cursor = db.execute(
                    "UPDATE tasks SET payment_id = ?, advance_payment = ?, "
                    "advance_payment_status = 'pending' "
                    "WHERE task_id = ? AND status = 'active' AND selected_tasker_id IS NOT NULL "
                    "AND (advance_payment_status IS NULL OR advance_payment_status = 'pending')",
                    (payment_data["order_id"], payment_data["amount"], payment_data["task_id"]),
                )
                if cursor.rowcount != 1:
                    raise TransitionConflictError(
                        f"Task {payment_data['task_id']} does not accept an advance payment"
                    )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicatePaymentError(
                    f"A payment with order_id={payment_data['order_id']} already exists"
                ) from exc
            raise

    def get_payment(self, order_id: str) -> dict[str, Any] | None:
        """Fetch a payment by order ID."""
        with self._lock:
            row = self._db.execute(
                self._PAYMENT_SELECT_BASE_SQL + " WHERE order_id = ?",
                (order_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_payment(row)

    def get_payments_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """Fetch all payments recorded for a task, newest first."""
        with self._lock:
            rows = self._db.execute(
                self._PAYMENT_SELECT_BASE_SQL + " WHERE task_id = ? ORDER BY created_at DESC",
                (task_id,),
            ).fetchall()
        return [self._row_to_payment(row) for row in rows]

    def record_payment_result(
        self,
        order_id: str,
        *,
        payment_status: str,
        payment_updates: dict[str, Any],
        processed_at: str,
    ) -> tuple[str, dict[str, Any]]:
        """
        Apply a provider result to the payment row and its task in one transaction.

        payment_status is "completed", "failed" or "cancelled". The payment row is
        the processing marker: a result equal to the stored status, or any result
        for an already completed payment, changes nothing.

        Returns (outcome, payment) where outcome is one of:
            "duplicate" - nothing changed
            "scheduled" - task moved active -> scheduled with the advance paid
            "orphaned"  - payment completed but the task could not be scheduled
            "reset"     - task advance fields cleared after failure/cancellation
            "recorded"  - payment updated, task untouched

        Raises:
            PaymentNotFoundError: unknown order_id
        """
        if any(column not in self._PAYMENT_COLUMNS for column in payment_updates):
            msg = "Attempted to update unknown payment column"
            raise ValueError(msg)

        with self._transaction() as db:
            row = db.execute(
                self._PAYMENT_SELECT_BASE_SQL + " WHERE order_id = ?",
                (order_id,),
            ).fetchone()
            if row is None:
                raise PaymentNotFoundError(f"No payment with order_id={order_id}")
            payment = self._row_to_payment(row)

            if payment["status"] in (payment_status, "completed"):
                return "duplicate", payment

            updates = {**payment_updates, "status": payment_status, "processed_at": processed_at}
            set_clause = ", ".join(f"{column} = ?" for column in updates)
            db.execute(
                "UPDATE payments SET " + set_clause + " WHERE order_id = ?",  # nosec B608
                [*updates.values(), order_id],
            )
            payment.update(updates)

            if payment_status == "completed":
                cursor = db.execute(
                    "UPDATE tasks SET status = 'scheduled', advance_payment_status = 'paid', "
                    "advance_payment_date = ?, advance_payment = ?, payment_id = ? "
                    "WHERE task_id = ? AND status = 'active' "
                    "AND selected_tasker_id IS NOT NULL AND agreed_payment IS NOT NULL "
                    "AND agreed_time IS NOT NULL "
                    "AND (advance_payment_status IS NULL OR advance_payment_status = 'pending')",
                    (processed_at, payment["amount"], order_id, payment["task_id"]),
                )
                outcome = "scheduled" if cursor.rowcount == 1 else "orphaned"
            else:
                cursor = db.execute(
                    "UPDATE tasks SET advance_payment_status = NULL, advance_payment = NULL, "
                    "payment_id = NULL "
                    "WHERE task_id = ? AND status = 'active' "
                    "AND advance_payment_status = 'pending' AND payment_id = ?",
                    (payment["task_id"], order_id),
                )
                outcome = "reset" if cursor.rowcount == 1 else "recorded"

        return outcome, payment

    def release_advance_payment(self, task_id: str, released_at: str) -> int:
        """Mark a paid advance as released. Only completed tasks qualify."""
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE tasks SET advance_payment_status = 'released', "
                "advance_payment_released_at = ? "
                "WHERE task_id = ? AND status = 'completed' AND advance_payment_status = 'paid'",
                (released_at, task_id),
            )
        return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Schedule and completion
    # ------------------------------------------------------------------

    def confirm_schedule(self, task_id: str, tasker_id: str) -> int:
        """Set tasker_confirmed on a scheduled task for its selected tasker."""
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE tasks SET tasker_confirmed = 1 "
                "WHERE task_id = ? AND status = 'scheduled' AND selected_tasker_id = ? "
                "AND tasker_confirmed = 0",
                (task_id, tasker_id),
            )
        return int(cursor.rowcount)

    def record_completion(
        self,
        task_id: str,
        side: str,
        updates: dict[str, Any],
        completed_at: str,
    ) -> bool:
        """
        Stamp one side's completion and finalize the task if both sides are done.

        side is "tasker" or "customer". The stamp only applies to a scheduled
        task whose side has not completed yet (and, for the tasker, only after
        the schedule was confirmed). Returns True when this call moved the task
        to completed.

        Raises:
            TransitionConflictError: the side cannot complete in the current state
        """
        if side not in ("tasker", "customer"):
            msg = f"Unknown completion side: {side}"
            raise ValueError(msg)
        stamp_column = f"{side}_completed_at"
        all_updates = {**updates, stamp_column: completed_at}
        if any(column not in self._TASK_COLUMNS for column in all_updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in all_updates)
        params: list[object] = [
            self._encode_task_value(column, value) for column, value in all_updates.items()
        ]
        params.append(task_id)
        query = (
            "UPDATE tasks SET "
            + set_clause
            + " WHERE task_id = ? AND status = 'scheduled' AND "
            + stamp_column
            + " IS NULL"
        )  # nosec B608
        if side == "tasker":
            query += " AND tasker_confirmed = 1"

        with self._transaction() as db:
            if db.execute(query, params).rowcount != 1:
                raise TransitionConflictError(f"Task {task_id} cannot be completed by the {side}")
            cursor = db.execute(
                "UPDATE tasks SET status = 'completed', completed_at = ? "
                "WHERE task_id = ? AND status = 'scheduled' "
                "AND tasker_completed_at IS NOT NULL AND customer_completed_at IS NOT NULL",
                (completed_at, task_id),
            )
            transitioned = cursor.rowcount == 1

        return transitioned

    def cancel_schedule(
        self,
        task_id: str,
        cancelled_by: str,
        reason: str | None,
        cancelled_at: str,
    ) -> int:
        """
        Revert a scheduled task to active for a new matching cycle.

        Clears the selection and completion stamps; a paid advance is marked
        refunded. Applications are left untouched.
        """
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE tasks SET status = 'active', selected_tasker_id = NULL, "
                "agreed_time = NULL, agreed_payment = NULL, selected_at = NULL, "
                "tasker_confirmed = 0, tasker_completed_at = NULL, "
                "customer_completed_at = NULL, "
                "advance_payment_status = CASE WHEN advance_payment_status = 'paid' "
                "THEN 'refunded' ELSE advance_payment_status END, "
                "cancellation_reason = ?, cancelled_by = ?, cancelled_at = ? "
                "WHERE task_id = ? AND status = 'scheduled'",
                (reason, cancelled_by, cancelled_at, task_id),
            )
        return int(cursor.rowcount)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
