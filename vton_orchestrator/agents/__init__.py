"""Azure OpenAI agents used as pipeline collaborators."""

from .prompt_writer import AgentPromptWriter, TemplatePromptWriter, template_prompt
from .quality_evaluator import AgentQualityEvaluator

__all__ = ["AgentPromptWriter", "TemplatePromptWriter", "template_prompt", "AgentQualityEvaluator"]
