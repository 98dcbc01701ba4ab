"""
AI integration for test repair.

This module contains:
- completion_client.py: Text-completion capability over crewai / Ollama models
- prompts.py: Repair prompt construction
- llm_output_cleaner.py: Cleanup of raw model output
"""

__all__ = ["completion_client", "prompts", "llm_output_cleaner"]
