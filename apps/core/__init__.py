"""
Shared building blocks: base model, errors, logging, request context.
"""
