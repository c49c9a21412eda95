"""
Job Queue — durable polling queue over the relational job store.

- backend   QueueBackend: enqueue, claim, retry/backoff, pause/resume
- registry  ProcessorRegistry: queue name → handler + concurrency
- monitor   QueueMonitor: per-queue metrics and health
- factory   create_queue_backend(settings)
"""
