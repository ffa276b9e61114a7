# =============================================================================
# Workers Package: Background Ingestion
# =============================================================================
#   - queue.py: JobQueue, job records, retry policy, retention
#   - pipeline.py: DocumentPipeline stages (load → ... → cleanup)
#   - celery_app.py: Celery transport, one queue per job type
#   - local.py: In-process worker pool for the memory job backend
#   - tasks.py: Celery tasks + worker process lifecycle
# =============================================================================
