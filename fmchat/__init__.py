"""
fmchat: terminal chat for a local on-device LLM server.
Streams replies over SSE and keeps guardrail refusals out of the prompt context.
"""

__version__ = "0.3.0"
