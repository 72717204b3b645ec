"""Vision agent that judges try-on candidates against the garment reference."""

from typing import Any, Sequence

from azure.identity import AzureCliCredential
from agent_framework import ChatMessage, Content
from agent_framework.azure import AzureOpenAIResponsesClient

from ..errors import EvaluatorFailure
from .responses import detect_mime_type, parse_json_response, response_text


EVALUATOR_INSTRUCTIONS = """You are a strict quality reviewer for virtual try-on images.

You receive a REFERENCE garment image followed by several numbered CANDIDATE images. Each candidate shows a person who should be wearing the reference garment.

For every candidate decide:
- material_flaw: true if the candidate has ANY noticeable defect: wrong color or pattern, missing or invented details (buttons, straps, neckline), visible seams or artifacts, distorted hands, face or body, garment not fitting the body naturally.
- fundamentally_flawed: true ONLY if the candidate is unusable: wrong garment category (e.g. a shirt instead of a dress), severe structural corruption (melted limbs, broken anatomy), or overwhelming artifacts.

Then choose the best candidate and an action:
- "select" when at least one candidate is acceptable
- "retry" when none is

Return ONLY a JSON object:
{
  "action": "select" | "retry",
  "chosen_index": <0-based index of the best candidate>,
  "reasoning": "one or two sentences",
  "assessments": [
    {"index": 0, "material_flaw": false, "fundamentally_flawed": false, "notes": "..."}
  ]
}"""


def describe_flags(flags: dict[str, bool]) -> str:
    if flags.get("is_absolute_final_attempt"):
        return (
            "This is the FINAL attempt. You must return action \"select\" and choose the best "
            "candidate, even if every candidate has flaws."
        )
    if flags.get("is_escalation_check"):
        return (
            "Be LENIENT. Select unless every candidate is fundamentally flawed. Returning "
            "\"retry\" moves generation to a stronger, slower engine."
        )
    return "Be STRICT. Return \"retry\" if every candidate has a material flaw."


class AgentQualityEvaluator:
    """Quality evaluator backed by an Azure OpenAI vision agent."""

    def __init__(self, name: str = "TryOnQualityEvaluator"):
        """Initialize with Azure OpenAI client."""
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
                instructions=EVALUATOR_INSTRUCTIONS,
            )
        return self._agent

    def build_message(
        self,
        reference: bytes,
        candidates: Sequence[bytes],
        flags: dict[str, bool],
    ) -> ChatMessage:
        contents = [
            Content.from_text(f"{describe_flags(flags)}\n\nReference garment:"),
            Content.from_data(data=reference, media_type=detect_mime_type(reference)),
        ]
        for i, candidate in enumerate(candidates):
            contents.append(Content.from_text(f"Candidate {i}:"))
            contents.append(Content.from_data(data=candidate, media_type=detect_mime_type(candidate)))
        return ChatMessage(role="user", contents=contents)

    async def evaluate(
        self,
        reference: bytes,
        candidates: Sequence[bytes],
        flags: dict[str, bool],
    ) -> dict[str, Any]:
        agent = self._get_agent()
        response = await agent.run(self.build_message(reference, candidates, flags))

        text = response_text(response)
        try:
            return parse_json_response(text)
        except ValueError as e:
            raise EvaluatorFailure(f"unparseable evaluator response: {text[:200]!r}") from e
