# Video Providers - simulated rendering backends tried in fallback order

import os, time, uuid, logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

STORAGE_BASE_URL = os.getenv('STORAGE_BASE_URL', 'https://storage.animagenius.com')
# Scales the simulated render delays; 0 disables sleeping (tests)
RENDER_DELAY_SCALE = float(os.getenv('RENDER_DELAY_SCALE', '1.0'))


class VideoProviderBase(ABC):
    @property
    @abstractmethod
    def provider_name(self) -> str: pass
    @property
    @abstractmethod
    def render_delay(self) -> float: pass
    @abstractmethod
    def is_available(self) -> bool: pass
    @abstractmethod
    def render(self, blueprint: Dict[str, Any]) -> Optional[str]: pass


class SimulatedProvider(VideoProviderBase):
    """Pretends to call a rendering API: waits, then returns a storage URL"""

    def __init__(self, delay_scale: Optional[float] = None):
        self.delay_scale = RENDER_DELAY_SCALE if delay_scale is None else delay_scale

    def is_available(self): return True

    def _video_id(self) -> str:
        return uuid.uuid4().hex[:7]

    def render(self, blueprint):
        delay = self.render_delay * self.delay_scale
        if delay > 0:
            time.sleep(delay)
        video_url = f"{STORAGE_BASE_URL}/videos/{self.provider_name}_{self._video_id()}.mp4"
        logger.info(f"[RENDER] {self.provider_name} rendered '{blueprint.get('title', '')}' -> {video_url}")
        return video_url


class SynthesiaProvider(SimulatedProvider):
    @property
    def provider_name(self): return "synthesia"
    @property
    def render_delay(self): return 2.0


class HeyGenProvider(SimulatedProvider):
    @property
    def provider_name(self): return "heygen"
    @property
    def render_delay(self): return 1.5


class VideoProviderFactory:
    def __init__(self, providers: Optional[List[VideoProviderBase]] = None):
        self._providers = providers if providers is not None else [
            SynthesiaProvider(),
            HeyGenProvider(),
        ]

    def get_providers(self) -> List[VideoProviderBase]:
        """Available providers in the order they should be tried"""
        return [p for p in self._providers if p.is_available()]

    def list_providers(self):
        return [{"name": p.provider_name, "available": p.is_available()} for p in self._providers]


video_provider_factory = VideoProviderFactory()
def list_video_providers(): return video_provider_factory.list_providers()
