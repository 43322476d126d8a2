"""SQL constants for task rows, shared by the queue, retry manager and task API.

Enum columns are stored by member name ('PENDING', 'SUCCESS', ...).
"""

from __future__ import annotations

from sqlalchemy import text

# A dependency row is satisfied when the prerequisite's status matches its type.
_DEPENDENCY_SATISFIED = """
    (d.dependency_type = 'FINISH' AND p.status IN ('COMPLETED', 'FAILED', 'CANCELLED'))
    OR (d.dependency_type = 'SUCCESS' AND p.status = 'COMPLETED')
    OR (d.dependency_type = 'FAILURE' AND p.status = 'FAILED')
    OR (d.dependency_type = 'CANCEL' AND p.status = 'CANCELLED')
"""


# ---------- Claim SQL (priority DESC, created_at ASC) ----------
# A due RETRYING row goes straight to RUNNING: RETRYING -> PENDING -> RUNNING
# applied in one statement. Rows locked by another claimer are skipped.

CLAIM_TASKS_SQL = text(f"""
WITH next AS (
  SELECT t.id
  FROM drayage_tasks t
  WHERE t.queue_name = :queue
    AND t.status IN ('PENDING', 'RETRYING')
    AND t.scheduled_at <= now()
    AND (t.expires_at IS NULL OR t.expires_at > now())
    AND NOT EXISTS (
      SELECT 1
      FROM drayage_task_dependencies d
      JOIN drayage_tasks p ON p.id = d.depends_on_task_id
      WHERE d.task_id = t.id
        AND NOT ({_DEPENDENCY_SATISFIED})
    )
  ORDER BY t.priority DESC, t.created_at ASC, t.id ASC
  FOR UPDATE OF t SKIP LOCKED
  LIMIT :lim
)
UPDATE drayage_tasks t
SET status = 'RUNNING',
    started_at = now(),
    completed_at = NULL,
    updated_at = now()
FROM next
WHERE t.id = next.id
RETURNING t.*
""")


# Hands a claim back when its handler never ran to completion (task lock
# held elsewhere, or the worker stopped first). started_at pins this claim,
# so a newer claim of the same row is left alone.
UNCLAIM_TASK_SQL = text("""
UPDATE drayage_tasks
SET status = 'PENDING',
    started_at = NULL,
    scheduled_at = now() + make_interval(secs => CAST(:delay AS double precision)),
    updated_at = now()
WHERE id = :id
  AND status = 'RUNNING'
  AND started_at IS NOT DISTINCT FROM CAST(:started_at AS timestamptz)
RETURNING id
""")


# ---------- Finalize ----------
# Every finalize statement is guarded by status = 'RUNNING': a task cancelled
# while its handler ran keeps CANCELLED and the late outcome is dropped.

MARK_COMPLETED_SQL = text("""
UPDATE drayage_tasks
SET status = 'COMPLETED',
    result = :result,
    progress = 100,
    error_message = NULL,
    completed_at = now(),
    updated_at = now()
WHERE id = :id AND status = 'RUNNING'
RETURNING id
""")

MARK_FAILED_SQL = text("""
UPDATE drayage_tasks
SET status = 'FAILED',
    error_message = :error_message,
    completed_at = now(),
    updated_at = now()
WHERE id = :id AND status = 'RUNNING'
RETURNING id
""")

SCHEDULE_RETRY_SQL = text("""
UPDATE drayage_tasks
SET status = 'RETRYING',
    retry_count = retry_count + 1,
    scheduled_at = :scheduled_at,
    error_message = :error_message,
    payload = payload || jsonb_build_object(
      'retry_info',
      CAST(:retry_info AS jsonb) || jsonb_build_object('retry_count', retry_count + 1)
    ),
    updated_at = now()
WHERE id = :id
  AND status = 'RUNNING'
  AND retry_count < max_retries
RETURNING retry_count, scheduled_at
""")

SET_PROGRESS_SQL = text("""
UPDATE drayage_tasks
SET progress = GREATEST(progress, :progress),
    updated_at = now()
WHERE id = :id AND status = 'RUNNING'
RETURNING progress
""")

GET_STATUS_SQL = text("""
SELECT status FROM drayage_tasks WHERE id = :id
""")


# ---------- Retry scheduling ----------

PROMOTE_DUE_RETRIES_SQL = text("""
WITH due AS (
  SELECT id
  FROM drayage_tasks
  WHERE status = 'RETRYING'
    AND scheduled_at <= now()
  ORDER BY scheduled_at ASC
  FOR UPDATE SKIP LOCKED
  LIMIT :lim
)
UPDATE drayage_tasks t
SET status = 'PENDING',
    updated_at = now()
FROM due
WHERE t.id = due.id
RETURNING t.id
""")

# Administrative FAILED/CANCELLED -> PENDING. An already-passed expiry is
# pushed out by :ttl seconds so the task is claimable again.
MANUAL_RETRY_SQL = text("""
UPDATE drayage_tasks
SET status = 'PENDING',
    scheduled_at = now(),
    started_at = NULL,
    completed_at = NULL,
    error_message = NULL,
    retry_count = CASE WHEN :reset THEN 0 ELSE retry_count END,
    expires_at = CASE
      WHEN expires_at IS NOT NULL AND expires_at <= now()
        THEN now() + make_interval(secs => CAST(:ttl AS double precision))
      ELSE expires_at
    END,
    updated_at = now()
WHERE id = :id AND status IN ('FAILED', 'CANCELLED')
RETURNING id
""")

# Bulk administrative retry: FAILED tasks with budget left, counted as a retry.
RETRY_FAILED_TASKS_SQL = text("""
UPDATE drayage_tasks
SET status = 'PENDING',
    retry_count = retry_count + 1,
    scheduled_at = now(),
    started_at = NULL,
    completed_at = NULL,
    error_message = NULL,
    expires_at = CASE
      WHEN expires_at IS NOT NULL AND expires_at <= now()
        THEN now() + make_interval(secs => CAST(:ttl AS double precision))
      ELSE expires_at
    END,
    updated_at = now()
WHERE status = 'FAILED'
  AND retry_count < max_retries
  AND (CAST(:queue AS text) IS NULL OR queue_name = CAST(:queue AS text))
RETURNING id
""")

# Classified failures from the execution log, grouped by category and
# exception type. Cancellation entries carry no category and are left out.
ERROR_STATISTICS_SQL = text("""
SELECT
  l.error->>'category' AS category,
  l.error->>'error_type' AS error_type,
  COUNT(*) AS occurrences,
  COUNT(DISTINCT l.task_id) AS tasks,
  MIN(l.started_at) AS first_seen,
  MAX(l.started_at) AS last_seen
FROM drayage_task_execution_log l
JOIN drayage_tasks t ON t.id = l.task_id
WHERE l.error->>'category' IS NOT NULL
  AND (CAST(:since AS timestamptz) IS NULL OR l.started_at >= CAST(:since AS timestamptz))
  AND (CAST(:until AS timestamptz) IS NULL OR l.started_at < CAST(:until AS timestamptz))
  AND (CAST(:queue AS text) IS NULL OR t.queue_name = CAST(:queue AS text))
  AND (CAST(:task_type AS text) IS NULL OR t.task_type::text = CAST(:task_type AS text))
GROUP BY 1, 2
ORDER BY occurrences DESC, category, error_type
""")

# FAILED tasks that retry_failed_tasks() will not pick up again.
DEAD_LETTER_TASKS_SQL = text("""
SELECT *
FROM drayage_tasks
WHERE status = 'FAILED'
  AND retry_count >= max_retries
  AND (CAST(:queue AS text) IS NULL OR queue_name = CAST(:queue AS text))
ORDER BY completed_at DESC NULLS LAST, id
LIMIT :lim
""")

RETRY_STATISTICS_SQL = text("""
SELECT
  COUNT(*) FILTER (WHERE retry_count > 0) AS retried_tasks,
  COUNT(*) FILTER (WHERE status = 'RETRYING') AS waiting_retries,
  COUNT(*) FILTER (WHERE retry_count > 0 AND status = 'COMPLETED') AS recovered,
  COUNT(*) FILTER (WHERE retry_count > 0 AND status = 'FAILED') AS exhausted,
  COALESCE(AVG(retry_count) FILTER (WHERE retry_count > 0), 0) AS avg_retry_count,
  COALESCE(MAX(retry_count), 0) AS max_retry_count
FROM drayage_tasks
WHERE CAST(:queue AS text) IS NULL OR queue_name = CAST(:queue AS text)
""")


# ---------- Cancellation & expiry ----------
# A RETRYING row is cancelled as RETRYING -> PENDING -> CANCELLED in one statement.

CANCEL_TASK_SQL = text("""
UPDATE drayage_tasks
SET status = 'CANCELLED',
    error_message = :reason,
    completed_at = now(),
    updated_at = now()
WHERE id = :id AND status IN ('PENDING', 'RUNNING', 'RETRYING')
RETURNING id, queue_name
""")

# Overdue unfinished rows fail as expired; PENDING/RETRYING rows are treated
# as claimed-then-failed.
EXPIRE_TASK_SQL = text("""
UPDATE drayage_tasks
SET status = 'FAILED',
    error_message = :message,
    completed_at = now(),
    updated_at = now()
WHERE id = :id
  AND status IN ('PENDING', 'RUNNING', 'RETRYING')
  AND expires_at IS NOT NULL
  AND expires_at <= now()
RETURNING id
""")

EXPIRE_OVERDUE_TASKS_SQL = text("""
UPDATE drayage_tasks
SET status = 'FAILED',
    error_message = :message,
    completed_at = now(),
    updated_at = now()
WHERE status IN ('PENDING', 'RUNNING', 'RETRYING')
  AND expires_at IS NOT NULL
  AND expires_at <= now()
RETURNING id, queue_name
""")

PURGE_FINISHED_TASKS_SQL = text("""
DELETE FROM drayage_tasks
WHERE status IN ('COMPLETED', 'FAILED', 'CANCELLED')
  AND completed_at IS NOT NULL
  AND completed_at < now() - make_interval(hours => CAST(:hours AS integer))
""")


# ---------- Dependencies ----------

DEPENDENTS_SQL = text("""
SELECT d.task_id, d.dependency_type, t.status
FROM drayage_task_dependencies d
JOIN drayage_tasks t ON t.id = d.task_id
WHERE d.depends_on_task_id = :id
""")

# Would adding task_id -> depends_on close a cycle? True when task_id is
# reachable from depends_on through existing edges.
DEPENDENCY_CYCLE_SQL = text("""
WITH RECURSIVE upstream(id) AS (
  SELECT depends_on_task_id FROM drayage_task_dependencies WHERE task_id = :depends_on
  UNION
  SELECT d.depends_on_task_id
  FROM drayage_task_dependencies d
  JOIN upstream u ON d.task_id = u.id
)
SELECT EXISTS (SELECT 1 FROM upstream WHERE id = :task_id)
""")


# ---------- Queue statistics ----------

STATUS_COUNTS_SQL = text("""
SELECT status, COUNT(*) AS n
FROM drayage_tasks
WHERE CAST(:queue AS text) IS NULL OR queue_name = CAST(:queue AS text)
GROUP BY status
""")

RUNNING_AGE_SQL = text("""
SELECT
  COUNT(*) FILTER (
    WHERE started_at < now() - make_interval(secs => CAST(:timeout AS double precision))
  ) AS long_running,
  COUNT(*) FILTER (
    WHERE started_at < now() - make_interval(secs => CAST(:timeout AS double precision) * 2)
  ) AS stuck
FROM drayage_tasks
WHERE status = 'RUNNING'
  AND (CAST(:queue AS text) IS NULL OR queue_name = CAST(:queue AS text))
""")

QUEUE_SIZE_SQL = text("""
SELECT COUNT(*)
FROM drayage_tasks
WHERE queue_name = :queue AND status = 'PENDING'
""")
