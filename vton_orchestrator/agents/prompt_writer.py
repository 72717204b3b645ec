"""Prompt writers for the generation stage."""

from typing import Any

import structlog
from azure.identity import AzureCliCredential
from agent_framework import ChatMessage, Content
from agent_framework.azure import AzureOpenAIResponsesClient

from .responses import detect_mime_type, response_text

logger = structlog.get_logger(__name__)


PROMPT_WRITER_INSTRUCTIONS = """You write prompts for an image editing model that performs virtual try-on.

The model receives two images: the PERSON (a crop around the region to edit) and the GARMENT. It must dress the person in the garment while keeping their face, hair, body, pose, background and lighting unchanged.

When the garment image is attached to the request, use it to get the garment type, color and details right.

Write one prompt that:
1. Starts by asking to keep the exact same person and scene.
2. Names the specific garment type and color (never the generic word "garment").
3. Mentions two or three distinctive features (neckline, sleeves, fabric, details).

Return ONLY the prompt text: no markdown, no explanation, no questions."""


def template_prompt(garment_description: str, person_description: str = "person") -> str:
    """Deterministic prompt used when no agent output is available."""
    garment = garment_description.strip() or "outfit"
    return (
        f"Keep the exact same {person_description} from the first image: preserve their face, "
        f"hair, body, pose and the background exactly. Only change their clothing to the "
        f"{garment} shown in the second image."
    )


class TemplatePromptWriter:
    """Prompt writer without an LLM."""

    async def write(self, context: dict[str, Any]) -> str:
        return template_prompt(
            context.get("garment_description", ""),
            context.get("person_description", "person"),
        )


class AgentPromptWriter:
    """Prompt writer backed by an Azure OpenAI agent."""

    def __init__(self, name: str = "TryOnPromptWriter"):
        self.name = name
        self.client = AzureOpenAIResponsesClient(
            credential=AzureCliCredential(),
        )
        self._agent = None

    def _get_agent(self):
        """Lazy initialization of the agent."""
        if self._agent is None:
            self._agent = self.client.as_agent(
                name=self.name,
                instructions=PROMPT_WRITER_INSTRUCTIONS,
            )
        return self._agent

    async def write(self, context: dict[str, Any]) -> str:
        garment = context.get("garment_description", "")
        person = context.get("person_description", "person")
        garment_image = context.get("garment_image")

        if garment:
            described = garment
        elif garment_image:
            described = "(none given, infer from the garment image)"
        else:
            described = "(none given)"
        user_message = f"""Person: {person}

Garment description:
{described}

Write the prompt."""

        contents = [Content.from_text(user_message)]
        if garment_image:
            contents.append(Content.from_data(data=garment_image, media_type=detect_mime_type(garment_image)))

        agent = self._get_agent()
        response = await agent.run([ChatMessage(role="user", contents=contents)])

        prompt = response_text(response).strip()
        if not prompt:
            logger.warning("Prompt agent returned no text, using template prompt")
            return template_prompt(garment, person)
        return prompt
