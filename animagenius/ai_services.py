"""
AI Processing Service for AnimaGenius
Content extraction and video blueprint generation through a chat-completions
endpoint, plus video rendering through the simulated providers.
"""

import io
import os
import re
import json
import time
import math
import logging
import threading
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from pypdf import PdfReader
from docx import Document as DocxDocument

from animagenius.monitoring import track_ai_request, record_video_generation
from animagenius.video_providers import VideoProviderFactory, video_provider_factory

logger = logging.getLogger(__name__)

# ========================================================================
# CONFIGURATION
# ========================================================================

AI_ENDPOINT = os.getenv('AI_ENDPOINT', 'https://oi-server.onrender.com/chat/completions')
AI_CUSTOMER_ID = os.getenv('AI_CUSTOMER_ID', 'cus_SFkzlM4lBe5pBM')
AI_API_KEY = os.getenv('AI_API_KEY', 'xxx')
AI_TIMEOUT = int(os.getenv('AI_TIMEOUT', 60))

EXTRACTION_MODEL = 'openrouter/anthropic/claude-3.5-sonnet'
BLUEPRINT_MODEL = 'openrouter/openai/gpt-4'

MIME_PDF = 'application/pdf'
MIME_DOCX = 'application/vnd.openxmlformats-officedocument.wordprocessingml.document'
MIME_XLSX = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
MIME_TEXT = 'text/plain'

MAX_BLUEPRINT_CONTENT = 2000
MAX_FALLBACK_SCRIPT = 500


class AIServiceError(Exception):
    """The AI endpoint failed or returned an unusable response"""


# ========================================================================
# HTTP SESSION MANAGEMENT (Connection Pooling + Retries)
# ========================================================================

_thread_local = threading.local()


def get_http_session() -> requests.Session:
    """Get thread-local HTTP session with connection pooling and retries"""
    if not hasattr(_thread_local, "session"):
        session = requests.Session()

        retry_strategy = Retry(
            total=2,
            connect=2,
            read=1,
            backoff_factor=0.5,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET", "POST"]
        )
        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_connections=20,
            pool_maxsize=20
        )
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        _thread_local.session = session

    return _thread_local.session


# ========================================================================
# DATA MODELS
# ========================================================================

@dataclass
class UploadedFile:
    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class ContentExtraction:
    text: str
    headings: List[str] = field(default_factory=list)
    key_points: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'text': self.text,
            'headings': self.headings,
            'keyPoints': self.key_points,
            'images': self.images,
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContentExtraction':
        return cls(
            text=str(data.get('text') or ''),
            headings=list(data.get('headings') or []),
            key_points=list(data.get('keyPoints') or data.get('key_points') or []),
            images=list(data.get('images') or []),
            metadata=dict(data.get('metadata') or {}),
        )


LEADING_NUMBER = re.compile(r'^\s*(\d+(?:\.\d+)?)')


def _as_seconds(value: Any) -> Optional[int]:
    """Whole seconds from a model-supplied duration such as 45, "45" or "45 seconds" """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        match = LEADING_NUMBER.match(value)
        if match:
            return int(float(match.group(1)))
    return None


@dataclass
class Scene:
    duration: int
    description: str
    visual_elements: List[str] = field(default_factory=list)
    transitions: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'duration': self.duration,
            'description': self.description,
            'visualElements': self.visual_elements,
            'transitions': self.transitions,
        }


@dataclass
class VoiceOver:
    script: str
    tone: str = 'professional'
    pacing: str = 'medium'


@dataclass
class VideoBlueprint:
    title: str
    scenes: List[Scene]
    total_duration: int
    style: str
    voice_over: VoiceOver

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'scenes': [s.to_dict() for s in self.scenes],
            'totalDuration': self.total_duration,
            'style': self.style,
            'voiceOver': asdict(self.voice_over),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VideoBlueprint':
        scenes = [
            Scene(
                duration=_as_seconds(s.get('duration')) or 0,
                description=str(s.get('description') or ''),
                visual_elements=list(s.get('visualElements') or []),
                transitions=str(s.get('transitions') or ''),
            )
            for s in (data.get('scenes') or [])
            if isinstance(s, dict)
        ]
        total = _as_seconds(data.get('totalDuration'))
        if total is None:
            total = sum(s.duration for s in scenes)
        voice = data.get('voiceOver') or {}
        return cls(
            title=str(data.get('title') or 'Generated Video'),
            scenes=scenes,
            total_duration=total,
            style=str(data.get('style') or 'professional'),
            voice_over=VoiceOver(
                script=str(voice.get('script') or ''),
                tone=str(voice.get('tone') or 'professional'),
                pacing=str(voice.get('pacing') or 'medium'),
            ),
        )


def default_blueprint(title: str, script: Optional[str], style: Optional[str] = None) -> VideoBlueprint:
    """Single intro scene used when there is no extracted content to plan from"""
    return VideoBlueprint(
        title=title,
        scenes=[Scene(
            duration=30,
            description='Introduction scene with project title',
            visual_elements=['title text', 'background'],
            transitions='fade in',
        )],
        total_duration=30,
        style=style or 'professional',
        voice_over=VoiceOver(script=script or 'Welcome to this video presentation'),
    )


# ========================================================================
# PROMPTS
# ========================================================================

EXTRACTION_SYSTEM_PROMPT = """You are an expert content analyst preparing documents for video production.

Extract from the document:
- the main text content, cleaned up
- headings and section titles
- key points and takeaways
- any visual elements that are mentioned
- document metadata

Respond with ONLY a JSON object of this shape:
{
  "text": "cleaned main text content",
  "headings": ["heading 1", "heading 2"],
  "keyPoints": ["key point 1", "key point 2"],
  "images": ["image description 1"],
  "metadata": {"pageCount": 1, "wordCount": 100, "language": "en"}
}"""

BLUEPRINT_SYSTEM_PROMPT = """You are a professional video producer writing blueprints for AI video generation.

A blueprint contains:
- a scene breakdown with timing
- a visual description for each scene
- transition effects
- a voice-over script with pacing
- overall style guidelines

Respond with ONLY a JSON object of this shape:
{
  "title": "video title",
  "scenes": [
    {"duration": 10, "description": "scene description",
     "visualElements": ["element 1"], "transitions": "transition description"}
  ],
  "totalDuration": 10,
  "style": "visual style description",
  "voiceOver": {"script": "full voice-over script", "tone": "professional", "pacing": "medium"}
}"""


def _first_sentence(text: str) -> str:
    return text.split('.')[0].strip()


def _strip_code_fences(content: str) -> str:
    """Models sometimes wrap JSON in ```json fences"""
    match = re.match(r'^\s*```(?:json)?\s*(.*?)\s*```\s*$', content, flags=re.DOTALL)
    return match.group(1) if match else content


def parse_json_reply(content: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(_strip_code_fences(content))
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


# ========================================================================
# AI PROCESSING SERVICE
# ========================================================================

class AIProcessingService:
    """Content extraction, blueprint generation and rendering"""

    def __init__(self, endpoint: str = None, customer_id: str = None, api_key: str = None,
                 provider_factory: VideoProviderFactory = None):
        self.endpoint = endpoint or AI_ENDPOINT
        self.customer_id = customer_id or AI_CUSTOMER_ID
        self.api_key = api_key or AI_API_KEY
        self.provider_factory = provider_factory or video_provider_factory

    def is_available(self) -> bool:
        return bool(self.endpoint)

    def _headers(self) -> Dict[str, str]:
        return {
            'customerId': self.customer_id,
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {self.api_key}',
        }

    def _chat(self, model: str, system_prompt: str, user_prompt: str,
              max_tokens: int, temperature: float, failure_message: str) -> str:
        """POST one chat completion and return the assistant message text"""
        payload = {
            'model': model,
            'messages': [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': user_prompt},
            ],
            'max_tokens': max_tokens,
            'temperature': temperature,
        }

        try:
            response = get_http_session().post(
                self.endpoint,
                headers=self._headers(),
                json=payload,
                timeout=AI_TIMEOUT
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"[AI] Request to {model} failed: {e}")
            raise AIServiceError(failure_message) from e

        if not response.ok:
            logger.error(f"[AI] {model} returned HTTP {response.status_code}")
            raise AIServiceError(failure_message)

        try:
            return response.json()['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"[AI] Malformed completion from {model}: {e}")
            raise AIServiceError(failure_message) from e

    @track_ai_request('extract_content')
    def extract_content(self, file: UploadedFile) -> ContentExtraction:
        """Extract structured content from an uploaded document"""
        content, page_count = self.process_file_content(file)

        reply = self._chat(
            EXTRACTION_MODEL,
            EXTRACTION_SYSTEM_PROMPT,
            f"Please analyze and extract content from this {file.content_type} file content: {content}",
            max_tokens=3000,
            temperature=0.3,
            failure_message='Failed to extract content with AI',
        )

        parsed = parse_json_reply(reply)
        if parsed is not None:
            return ContentExtraction.from_dict(parsed)

        logger.warning("[AI] Extraction reply was not JSON, using raw text")
        metadata = {'wordCount': len(content.split(' ')), 'language': 'en'}
        if page_count is not None:
            metadata['pageCount'] = page_count
        return ContentExtraction(text=reply, metadata=metadata)

    @track_ai_request('generate_blueprint')
    def generate_video_blueprint(self, content: ContentExtraction,
                                 preferences: Optional[Dict[str, Any]] = None) -> VideoBlueprint:
        """Turn extracted content into a scene-by-scene video plan"""
        preferences = preferences or {}
        style = preferences.get('style') or 'professional'
        duration = preferences.get('duration') or 300
        tone = preferences.get('tone') or 'professional'

        user_prompt = (
            "Create a video blueprint for this content:\n\n"
            f"Title: {_first_sentence(content.text)}\n"
            f"Key Points: {', '.join(content.key_points)}\n"
            f"Content: {content.text[:MAX_BLUEPRINT_CONTENT]}\n\n"
            "Preferences:\n"
            f"- Style: {style}\n"
            f"- Target Duration: {duration} seconds\n"
            f"- Tone: {tone}"
        )

        reply = self._chat(
            BLUEPRINT_MODEL,
            BLUEPRINT_SYSTEM_PROMPT,
            user_prompt,
            max_tokens=4000,
            temperature=0.7,
            failure_message='Failed to generate video blueprint',
        )

        parsed = parse_json_reply(reply)
        if parsed is not None:
            return VideoBlueprint.from_dict(parsed)

        logger.warning("[AI] Blueprint reply was not JSON, using fallback blueprint")
        return VideoBlueprint(
            title=_first_sentence(content.text) or 'Generated Video',
            scenes=[Scene(
                duration=30,
                description='Introduction scene with key message',
                visual_elements=['title text', 'background graphics'],
                transitions='fade in',
            )],
            total_duration=30,
            style='professional',
            voice_over=VoiceOver(script=content.text[:MAX_FALLBACK_SCRIPT]),
        )

    def generate_video(self, blueprint: VideoBlueprint, project_id: str) -> Dict[str, Any]:
        """Render with each provider in turn; first URL wins"""
        blueprint_data = blueprint.to_dict()

        for provider in self.provider_factory.get_providers():
            start_time = time.time()
            try:
                video_url = provider.render(blueprint_data)
            except Exception as e:
                logger.error(f"[RENDER] {provider.provider_name} failed for project {project_id}: {e}")
                record_video_generation(provider.provider_name, False, time.time() - start_time)
                continue

            record_video_generation(provider.provider_name, bool(video_url), time.time() - start_time)
            if video_url:
                return {
                    'success': True,
                    'videoUrl': video_url,
                    'provider': provider.provider_name,
                }

        logger.error(f"[RENDER] All video providers failed for project {project_id}")
        return {
            'success': False,
            'error': 'All video providers failed',
        }

    def process_file_content(self, file: UploadedFile):
        """Return (text, page_count) for a document; page_count is None when unknown"""
        if file.content_type == MIME_PDF:
            try:
                reader = PdfReader(io.BytesIO(file.data))
                pages = [page.extract_text() or '' for page in reader.pages]
                return '\n'.join(pages).strip(), len(reader.pages)
            except Exception as e:
                logger.warning(f"[AI] Could not parse PDF {file.name}: {e}")
                return 'Unreadable PDF document', None

        if file.content_type == MIME_DOCX:
            try:
                document = DocxDocument(io.BytesIO(file.data))
            except Exception as e:
                logger.warning(f"[AI] Could not parse DOCX {file.name}: {e}")
                return 'Unreadable DOCX document', None
            return '\n'.join(p.text for p in document.paragraphs if p.text).strip(), None

        if file.content_type == MIME_XLSX:
            return 'Spreadsheet content extraction is not supported yet', None

        if file.content_type == MIME_TEXT:
            return file.data.decode('utf-8', errors='replace'), None

        return 'Binary file - content extraction depends on file type', None


ai_service = AIProcessingService()
