"""Durable job queue over a shared SQLite store.

Workers coordinate only through the ``jobs`` table: a claim is a conditional
UPDATE guarded by ``status='pending'``, so whichever process commits first owns
the job and every other claimer moves on to the next candidate. Delivery is
at-least-once. A worker that dies mid-job leaves a running row whose
``timeout_at`` eventually passes, and ``JobQueue.reap_timeouts`` sends it back
through the normal retry path.
"""
