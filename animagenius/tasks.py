"""
Celery Tasks for AnimaGenius

Content extraction for uploaded documents runs here so the upload request can
return immediately. Without REDIS_URL the tasks run eagerly inside the request.
"""

import os
import logging
from pathlib import Path
from typing import Dict, Any

from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure

from animagenius import database as db
from animagenius.ai_services import ai_service, AIServiceError, UploadedFile

logger = logging.getLogger(__name__)

# ============================================================
# CELERY CONFIGURATION
# ============================================================

REDIS_URL = os.getenv('REDIS_URL', '')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', REDIS_URL) or None
CELERY_ALWAYS_EAGER = os.getenv('CELERY_ALWAYS_EAGER', 'false' if REDIS_URL else 'true').lower() == 'true'

celery_app = Celery(
    'animagenius_tasks',
    broker=REDIS_URL or 'memory://',
    backend=CELERY_RESULT_BACKEND
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    task_always_eager=CELERY_ALWAYS_EAGER,
    task_eager_propagates=False,

    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,
    task_soft_time_limit=270,

    result_expires=86400,
)


# ============================================================
# TASK SIGNALS (for monitoring)
# ============================================================

@task_prerun.connect
def task_prerun_handler(task_id, task, args, kwargs, **extras):
    logger.info(f"[TASK] Starting: {task.name} [{task_id}]")


@task_postrun.connect
def task_postrun_handler(task_id, task, args, kwargs, retval, state, **extras):
    logger.info(f"[TASK] Completed: {task.name} [{task_id}] - State: {state}")


@task_failure.connect
def task_failure_handler(task_id, exception, args, kwargs, traceback, einfo, **extras):
    logger.error(f"[TASK] Failed: {task_id} - {exception}")


# ============================================================
# EXTRACTION TASKS
# ============================================================

def _fail_job(job: Dict[str, Any], error: str) -> Dict[str, Any]:
    db.update_ai_job(job['id'], 'failed', error=error)
    db.update_project(job['project_id'], status='draft', processing_logs={
        'error': error,
        'timestamp': db.to_iso(db.utcnow()),
    })
    logger.error(f"[TASK] Extraction job {job['id']} failed: {error}")
    return {'status': 'failed', 'job_id': job['id'], 'error': error}


@celery_app.task(bind=True)
def process_extraction_job(self, job_id: str) -> Dict[str, Any]:
    """
    Run AI content extraction for an uploaded project file.

    Stores the extraction on the project, marks the job completed and returns
    the project to draft so it can be generated. Failures mark the job failed
    and leave a processing log on the project.
    """
    job = db.get_ai_job(job_id)
    if not job:
        logger.error(f"[TASK] Extraction job not found: {job_id}")
        return {'status': 'missing', 'job_id': job_id}

    db.update_ai_job(job_id, 'processing')

    job_input = job['input'] or {}
    storage_path = Path(job_input.get('storagePath', ''))
    if not storage_path.is_file():
        return _fail_job(job, 'Uploaded file is no longer available')

    upload = UploadedFile(
        name=job_input.get('fileName', storage_path.name),
        content_type=job_input.get('fileType') or 'application/octet-stream',
        data=storage_path.read_bytes(),
    )

    try:
        extraction = ai_service.extract_content(upload)
    except AIServiceError as e:
        return _fail_job(job, str(e))
    except Exception as e:
        logger.exception(f"[TASK] Unexpected extraction error for job {job_id}")
        return _fail_job(job, f'Content extraction failed: {e}')

    content = extraction.to_dict()
    db.update_project(job['project_id'], status='draft', extracted_content=content)
    db.update_ai_job(job_id, 'completed', output=content)

    logger.info(f"[TASK] Extraction job {job_id} completed for project {job['project_id']}")
    return {'status': 'completed', 'job_id': job_id, 'project_id': job['project_id']}
