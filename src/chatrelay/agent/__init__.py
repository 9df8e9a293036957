"""Agent server client."""

from chatrelay.agent.api import AgentApi, build_prompt_body
from chatrelay.agent.http import HttpAgentApi

__all__ = ["AgentApi", "HttpAgentApi", "build_prompt_body"]
