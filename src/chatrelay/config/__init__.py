"""Configuration: Pydantic models for chatrelay settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


class AgentConfig(BaseModel):
    """Agent server connection."""

    url: str = Field(default="http://127.0.0.1:4096", description="Base URL of the agent server")
    directory: str | None = Field(
        default=None,
        description="Project directory sent with every request and used to filter the global stream",
    )
    default_agent: str | None = Field(default="build", description="Agent selected for new sessions")
    timeout: float = Field(default=30.0, description="Request timeout in seconds (streams are unbounded)")
    use_global_stream: bool = Field(default=True, description="Also subscribe to /global/event")


class DeliveryConfig(BaseModel):
    """Streaming edit cadence."""

    flush_interval: float = Field(default=1.0, description="Seconds between edits of a streaming message")
    adapter_intervals: dict[str, float] = Field(
        default_factory=lambda: {"telegram": 2.5},
        description="Per-adapter overrides of flush_interval",
    )


class InteractionConfig(BaseModel):
    """Question and permission interrupts."""

    question_timeout: float = Field(default=900.0, description="Seconds before a pending question expires")
    auth_timeout: float = Field(default=900.0, description="Seconds before a pending authorization expires")
    permission_dedupe_window: float = Field(
        default=3.0, description="Window in which repeated permission events are dropped"
    )
    permission_prompt_window: float = Field(
        default=30.0, description="Window in which an identical permission prompt is not re-sent"
    )


class ListenerConfig(BaseModel):
    """Event stream subscription."""

    degraded_threshold: float = Field(
        default=30.0,
        description="Seconds of heartbeat-only primary traffic before the global stream takes over",
    )
    max_buffers: int = Field(default=600, description="Tracked message buffers before pruning")
    sweep_batch: int = Field(default=120, description="Buffers removed per prune")


class BridgeConfig(BaseModel):
    """Top-level chatrelay configuration."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    interaction: InteractionConfig = Field(default_factory=InteractionConfig)
    listener: ListenerConfig = Field(default_factory=ListenerConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> BridgeConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            CHATRELAY_AGENT_URL            - Agent server base URL
            CHATRELAY_AGENT_DIRECTORY      - Project directory
            CHATRELAY_FLUSH_INTERVAL       - Default flush interval (seconds)
            CHATRELAY_QUESTION_TIMEOUT     - Pending question timeout (seconds)
            CHATRELAY_AUTH_TIMEOUT         - Pending authorization timeout (seconds)
            BRIDGE_MAIN_EVENT_DEGRADED_MS  - Degraded threshold of the primary stream (milliseconds)
        """
        # .env values win over stale shell exports.
        load_dotenv(find_dotenv(usecwd=True), override=True)

        config_data: dict[str, Any] = {}
        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        agent = config_data.get("agent", {})
        delivery = config_data.get("delivery", {})
        interaction = config_data.get("interaction", {})
        listener = config_data.get("listener", {})

        env_url = os.environ.get("CHATRELAY_AGENT_URL")
        if env_url:
            agent["url"] = env_url

        env_directory = os.environ.get("CHATRELAY_AGENT_DIRECTORY")
        if env_directory:
            agent["directory"] = env_directory

        env_flush = os.environ.get("CHATRELAY_FLUSH_INTERVAL")
        if env_flush:
            delivery["flush_interval"] = float(env_flush)

        env_question_timeout = os.environ.get("CHATRELAY_QUESTION_TIMEOUT")
        if env_question_timeout:
            interaction["question_timeout"] = float(env_question_timeout)

        env_auth_timeout = os.environ.get("CHATRELAY_AUTH_TIMEOUT")
        if env_auth_timeout:
            interaction["auth_timeout"] = float(env_auth_timeout)

        env_degraded = os.environ.get("BRIDGE_MAIN_EVENT_DEGRADED_MS")
        if env_degraded:
            listener["degraded_threshold"] = float(env_degraded) / 1000.0

        for key, section in (
            ("agent", agent),
            ("delivery", delivery),
            ("interaction", interaction),
            ("listener", listener),
        ):
            if section:
                config_data[key] = section

        return cls.model_validate(config_data)


__all__ = [
    "AgentConfig",
    "BridgeConfig",
    "DeliveryConfig",
    "InteractionConfig",
    "ListenerConfig",
]
