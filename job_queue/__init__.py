"""
Job Queue — Persistent, prioritized, scheduled execution of messaging work.

- service.JobQueueService      producers submit / inspect / cancel jobs
- dispatcher.JobDispatcher     polls the store, claims and runs jobs
- handlers                     per-type execution (bulk, scheduled)
- retry.BackoffPolicy          delay between attempts after a soft failure
"""
