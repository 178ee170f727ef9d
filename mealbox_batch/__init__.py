"""
mealbox_batch -- Job engine and the background jobs of the billing engine.

Provides the job record lifecycle (create / start / complete / fail / log),
a per-job-type lease, a batch runner with keyset-cursor continuation and
SAVEPOINT-per-item isolation, and the six job definitions (renewal,
payment retry, credit expiry, order generation, trial completion,
auto-cancel of long pauses).

Architecture:
    mealbox_batch/ is a top-level package.  Nothing in kernel/, engines/,
    modules/, or services/ imports from mealbox_batch.

Invariants:
    - Every trigger invocation (or continuation) gets its own Job record.
    - At most one live run per job type (lease).
    - A committed batch is never rolled back by a later failure.
    - Clock injection: elapsed time and run dates come from the Clock.
"""
