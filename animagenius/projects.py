"""
Project Routes for AnimaGenius
Project creation with document upload, listing, detail and the video
generation pipeline (extract -> blueprint -> render).
"""

import logging
from pathlib import Path
from typing import Dict, Any, Optional

from flask import Blueprint, request, jsonify, g, current_app
from werkzeug.utils import secure_filename

from animagenius import database as db
from animagenius import plans
from animagenius.ai_services import (
    ai_service, ContentExtraction, default_blueprint,
)
from animagenius.auth import require_auth
from animagenius.extensions import limiter
from animagenius.responses import error_response
from animagenius.video_providers import STORAGE_BASE_URL

logger = logging.getLogger(__name__)

projects_bp = Blueprint('projects', __name__, url_prefix='/api/projects')

ACTIVE_STATUSES = ('processing', 'rendering')

# Stand-in used when a project has a file but extraction never ran
SIMULATED_EXTRACTION = {
    'text': 'Sample extracted content from document',
    'headings': ['Introduction', 'Main Content', 'Conclusion'],
    'keyPoints': ['Key point 1', 'Key point 2', 'Key point 3'],
    'images': [],
    'metadata': {'wordCount': 500, 'language': 'en'},
}


def serialize_project(project: Dict[str, Any], detail: bool = False) -> Dict[str, Any]:
    data = {
        'id': project['id'],
        'title': project['title'],
        'description': project['description'],
        'status': project['status'],
        'videoUrl': project['video_url'],
        'thumbnailUrl': project['thumbnail_url'],
        'duration': project['duration'],
        'createdAt': project['created_at'],
    }
    if detail:
        data.update({
            'settings': project['settings'],
            'fileUrl': project['file_url'],
            'fileName': project['file_name'],
            'fileType': project['file_type'],
            'fileSize': project['file_size'],
            'extractedContent': project['extracted_content'],
            'aiBlueprint': project['ai_blueprint'],
            'script': project['script'],
            'processingLogs': project['processing_logs'],
            'updatedAt': project['updated_at'],
        })
    return data


def file_size_cap(usage_limits: Optional[Dict]) -> Optional[int]:
    """Upload cap in bytes from the plan's fileSize (MB); None when unlimited"""
    limit_mb = (usage_limits or {}).get('fileSize', plans.UNLIMITED)
    if limit_mb == plans.UNLIMITED:
        return None
    return int(limit_mb) * 1024 * 1024


def store_upload(project_id: str, filename: str, data: bytes) -> Path:
    upload_dir = Path(current_app.config['UPLOAD_FOLDER']) / project_id
    upload_dir.mkdir(parents=True, exist_ok=True)
    path = upload_dir / filename
    path.write_bytes(data)
    return path


def _dispatch_extraction(job_id: str, project_id: str):
    # Imported here: the task module imports this app's services at load time
    from animagenius.tasks import process_extraction_job

    try:
        process_extraction_job.delay(job_id)
    except Exception as e:
        logger.error(f"[TASK] Could not queue extraction job {job_id}: {e}")
        db.update_project(project_id, status='draft', processing_logs={
            'error': 'Content extraction could not be queued',
            'timestamp': db.to_iso(db.utcnow()),
        })


# ==============================================================================
# ROUTES
# ==============================================================================

@projects_bp.route('', methods=['GET'])
@require_auth
def list_projects():
    """List the current user's projects, newest first"""
    try:
        projects = db.list_projects_for_user(g.current_user['id'])
        return jsonify({
            'success': True,
            'projects': [serialize_project(p) for p in projects],
        })
    except Exception as e:
        logger.error(f"Get projects error: {e}")
        return error_response('Failed to fetch projects', 'FETCH_FAILED', 500)


@projects_bp.route('', methods=['POST'])
@require_auth
def create_project():
    """Create a project, optionally with a document to extract content from"""
    user = g.current_user

    if plans.video_limit_reached(user['usage_limits'], user['current_usage']):
        return error_response('Video limit reached for this month. Please upgrade your plan.',
                              'USAGE_LIMIT_REACHED', 403)

    title = (request.form.get('title') or '').strip()
    description = request.form.get('description') or None
    template = request.form.get('template') or None
    upload = request.files.get('file')
    if upload is not None and not upload.filename:
        upload = None

    if not title:
        return error_response('Project title is required', 'MISSING_TITLE', 400)

    try:
        data = None
        if upload is not None:
            data = upload.read()
            cap = file_size_cap(user['usage_limits'])
            if cap is not None and len(data) > cap:
                return error_response('File exceeds the upload size allowed by your plan',
                                      'FILE_TOO_LARGE', 413)

        settings = {'template': template}
        if upload is not None:
            settings.update({
                'originalFileName': upload.filename,
                'originalFileSize': len(data),
                'originalFileType': upload.mimetype,
            })

        project = db.create_project(user['id'], title, description, settings)
        project_id = project['id']

        job_id = None
        if upload is not None:
            file_name = secure_filename(upload.filename) or 'upload'
            stored_path = store_upload(project_id, file_name, data)

            db.update_project(
                project_id,
                status='processing',
                file_url=f"{STORAGE_BASE_URL}/uploads/{project_id}/{file_name}",
                file_name=file_name,
                file_type=upload.mimetype,
                file_size=len(data),
            )
            job = db.create_ai_job(project_id, 'extract_content', {
                'fileName': file_name,
                'fileType': upload.mimetype,
                'fileSize': len(data),
                'storagePath': str(stored_path),
            }, provider='openai', status='pending')
            job_id = job['id']

        db.increment_user_video_usage(user['id'])
        db.track_usage(user['id'], 'project_created', {
            'projectId': project_id,
            'template': template,
            'hasFile': upload is not None,
        })

        if job_id:
            _dispatch_extraction(job_id, project_id)

        logger.info(f"Project created: {project_id} for {user['email']}")

        return jsonify({
            'success': True,
            'projectId': project_id,
            'message': 'Project created successfully',
        })

    except Exception as e:
        logger.error(f"Create project error: {e}")
        return error_response('Failed to create project', 'CREATE_FAILED', 500)


@projects_bp.route('/<project_id>', methods=['GET'])
@require_auth
def get_project(project_id):
    project = db.get_project_for_user(project_id, g.current_user['id'])
    if not project:
        return error_response('Project not found', 'NOT_FOUND', 404)

    data = serialize_project(project, detail=True)
    data['jobs'] = [
        {
            'id': job['id'],
            'type': job['type'],
            'status': job['status'],
            'error': job['error'],
            'createdAt': job['created_at'],
            'completedAt': job['completed_at'],
        }
        for job in db.list_project_jobs(project_id)
    ]
    return jsonify({'success': True, 'project': data})


@projects_bp.route('/<project_id>/generate', methods=['POST'])
@require_auth
@limiter.limit("10 per minute")
def generate_video(project_id):
    """Run the blueprint + render pipeline for a project"""
    user = g.current_user

    project = db.get_project_for_user(project_id, user['id'])
    if not project:
        return error_response('Project not found', 'NOT_FOUND', 404)

    if project['status'] in ACTIVE_STATUSES:
        return error_response('Project is already being processed', 'ALREADY_PROCESSING', 400)

    body = request.get_json(silent=True) or {}
    preferences = body.get('preferences') or {}

    db.update_project(project_id, status='processing')

    try:
        extraction = None
        if project['extracted_content']:
            extraction = ContentExtraction.from_dict(project['extracted_content'])
        elif project['file_url']:
            extraction = ContentExtraction.from_dict(SIMULATED_EXTRACTION)

        if extraction is not None:
            blueprint = ai_service.generate_video_blueprint(extraction, preferences)
        else:
            blueprint = default_blueprint(project['title'], project['description'],
                                          preferences.get('style'))

        blueprint_data = blueprint.to_dict()
        db.update_project(
            project_id,
            ai_blueprint=blueprint_data,
            script=blueprint_data['voiceOver'],
            status='rendering',
        )

        video_result = ai_service.generate_video(blueprint, project_id)

        if not (video_result['success'] and video_result.get('videoUrl')):
            error = video_result.get('error') or 'Video generation failed'
            db.update_project(project_id, status='failed', processing_logs={
                'error': error,
                'timestamp': db.to_iso(db.utcnow()),
            })
            return error_response(error, 'RENDER_FAILED', 500)

        video_url = video_result['videoUrl']
        db.update_project(
            project_id,
            status='completed',
            video_url=video_url,
            thumbnail_url=video_url.replace('.mp4', '_thumb.jpg', 1),
            duration=blueprint.total_duration,
        )
        db.track_usage(user['id'], 'video_generated', {
            'projectId': project_id,
            'duration': blueprint.total_duration,
            'provider': video_result['provider'],
        })

        logger.info(f"[OK] Video generated for project {project_id} via {video_result['provider']}")

        return jsonify({
            'success': True,
            'project': {
                'id': project_id,
                'status': 'completed',
                'videoUrl': video_url,
                'duration': blueprint.total_duration,
            },
        })

    except Exception as e:
        logger.error(f"Video generation error for {project_id}: {e}")
        db.update_project(project_id, status='failed', processing_logs={
            'error': str(e) or 'Processing failed',
            'timestamp': db.to_iso(db.utcnow()),
        })
        return error_response('Video generation failed', 'GENERATION_FAILED', 500)
