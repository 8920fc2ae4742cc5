"""
CRM Sync Queue — Durable, retryable jobs for third-party CRM synchronization.

- Admin requests ENQUEUE a job (status=queued)
- The crm_sync_dispatcher job CLAIMS due jobs one at a time and publishes
  a program_crm_sync_requested event for each
- Failures retry with linear backoff until max_attempts, then dead_letter
"""
from job_queue.crm_sync import CrmSyncJobQueue, CrmSyncDispatcher

__all__ = ["CrmSyncJobQueue", "CrmSyncDispatcher"]
