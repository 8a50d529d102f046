from .client import CONTENT_TYPES, SUMMARY_SCHEMA, LLMClient, normalize_summary

__all__ = ["CONTENT_TYPES", "SUMMARY_SCHEMA", "LLMClient", "normalize_summary"]
