"""Durable work queue for conversation automation.

Why not Celery / RQ / Dramatiq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Items are produced by webhook ingestion and follow-up scheduling inside the
same SQLite database that holds conversations, so enqueueing commits together
with the message it refers to. The processor is passive: an HTTP trigger, a
cron job or the CLI worker loop asks it to drain one bounded batch. Claiming is
a single conditional UPDATE, which is all the isolation concurrent workers
need on one machine. A broker would add an operational dependency while the
retry classification, backoff schedule and event history would still live here.
"""
