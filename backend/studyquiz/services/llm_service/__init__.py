"""LLM service module.

Provides the language model layer used by quiz generation and grading
(Anthropic, Ollama, Google Gemini, NVIDIA).

Key modules:
- llm.py: Provider factory and the ``ModelInvoker`` streaming wrapper
- structured_invoker.py: Tagged-block extraction, validation and retry
- llm_schemas.py: Pydantic schemas for pipeline inputs and structured outputs
"""
