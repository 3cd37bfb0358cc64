"""Research job orchestrator: scheduling, admission, execution and booking.

Why not APScheduler + Celery?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Cron-style triggering and task fan-out are the easy part here. What a
generic scheduler or broker does not cover is the coupling between them:

- Admission is decided against live state (concurrency slots, daily spend,
  per-provider monthly ledgers) and refusals are typed results, not
  exceptions or dropped messages.
- Jobs that cannot run yet are persisted as DEFERRED and only promoted by
  the next enqueue of the same mode, so a burst of triggers never turns
  into a burst of provider calls.
- Provider failures are classified (rate limit, auth, billing, model) and
  that class decides between in-call backoff, requeue, or a terminal
  failure that needs an operator.
- Every state change is a compare-and-set with an append-only event row in
  the same SQLite transaction.

For a single-process, SQLite-backed engine a tick loop plus a bounded
thread pool keeps all of that in one place without a broker to operate.
"""
