"""
All-in-One Browser Helper - background core

Feature lifecycle management and API request orchestration for the
browser helper extension: a per-service rate limiter, a retrying HTTP client
with response caching, an API manager handling credentials and usage
statistics, and a feature registry with dependency-aware activation.
"""

__version__ = "0.1.0"
__author__ = "Browser Helper Contributors"
__email__ = "noreply@example.com"
__description__ = "Background core for the All-in-One Browser Helper extension"
