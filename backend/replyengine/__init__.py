"""
replyengine: request orchestration core for LLM-backed reply suggestions.
"""
__version__ = "0.1.0"
