"""AnimaGenius backend: document-to-video SaaS API"""

__version__ = "1.0.0"
