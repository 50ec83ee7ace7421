"""External service integrations."""

from quickcal_bot.integrations.llm_analyzer import AnalysisError, LLMBatchAnalyzer

__all__ = ["AnalysisError", "LLMBatchAnalyzer"]
