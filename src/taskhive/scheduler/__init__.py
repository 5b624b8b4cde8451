"""Task delegation scheduler.

A root scheduler receives one unit of work already split into a handful of
tasks, dispatches them to workers through a per-instance delegation queue
(concurrency cap plus a minimum delay between dispatch initiations), retries
infrastructure failures, isolates permanent failures to the task that hit
them, and finally consolidates everything into exactly one report.

A scheduler can itself be handed to a parent scheduler as a worker.  The only
link between levels is the Mission sent down and the Result sent back up; no
level reads or writes another level's task list or queue.
"""
