from collections.abc import Callable

import httpx

from homework_api.schemas.analysis import AgentId, AgentPayload
from homework_api.services.agents.common import AgentContext
from homework_api.services.agents.generic_agent import extract_generic_exercises
from homework_api.services.agents.language_agent import extract_language_exercises
from homework_api.services.agents.math_agent import extract_math_exercises
from homework_api.services.agents.science_agent import extract_science_exercises
from homework_api.services.agents.study_material_agent import extract_study_material
from homework_api.services.model_gateway import GatewaySettings, RetryPolicy

AGENT_REGISTRY: dict[AgentId, Callable[..., AgentPayload]] = {
    AgentId.MATH_EXERCISE: extract_math_exercises,
    AgentId.SCIENCE_EXERCISE: extract_science_exercises,
    AgentId.LANGUAGE_EXERCISE: extract_language_exercises,
    AgentId.STUDY_MATERIAL: extract_study_material,
    AgentId.GENERIC_EXERCISE: extract_generic_exercises,
}


def run_agent(
    agent_id: AgentId,
    context: AgentContext,
    *,
    settings: GatewaySettings,
    policy: RetryPolicy,
    client: httpx.Client | None = None,
) -> AgentPayload:
    extract = AGENT_REGISTRY[agent_id]
    return extract(context, settings=settings, policy=policy, client=client)


__all__ = [
    "AGENT_REGISTRY",
    "AgentContext",
    "extract_generic_exercises",
    "extract_language_exercises",
    "extract_math_exercises",
    "extract_science_exercises",
    "extract_study_material",
    "run_agent",
]
