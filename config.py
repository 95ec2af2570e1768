"""
Configuration module for Vibe Runtime.
Handles environment variables, backend specifications, and application settings.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class AWSConfig:
    """AWS credentials for the Bedrock backend"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class RouterConfig:
    """Request router configuration"""
    default_backend: str = os.getenv("DEFAULT_BACKEND", "openrouter")
    default_model: str = os.getenv("DEFAULT_MODEL", "anthropic/claude-3.5-sonnet")
    # Rate budgets reset on this fixed interval (seconds)
    rate_window_seconds: float = float(os.getenv("RATE_WINDOW_SECONDS", "60"))
    request_timeout: int = int(os.getenv("REQUEST_TIMEOUT", "120"))
    # Upper bound of the random jitter added to each retry delay (seconds)
    retry_jitter: float = float(os.getenv("RETRY_JITTER", "1.0"))


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Vibe Runtime"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    default_mode: str = os.getenv("DEFAULT_MODE", "ask")
    state_dir: str = os.getenv("STATE_DIR", os.path.join(os.path.expanduser("~"), ".vibe-runtime"))
    # Decomposition request settings
    plan_model: str = os.getenv("PLAN_MODEL", "anthropic/claude-3.5-sonnet")
    plan_temperature: float = float(os.getenv("PLAN_TEMPERATURE", "0.1"))
    plan_max_tokens: int = int(os.getenv("PLAN_MAX_TOKENS", "2000"))
    # Pause between plan steps so UIs can render progress (seconds)
    inter_step_delay: float = float(os.getenv("INTER_STEP_DELAY", "0"))
    # How long a step may wait for approval before the task is cancelled; 0 = forever
    approval_timeout: float = float(os.getenv("APPROVAL_TIMEOUT", "0"))
    command_timeout: int = int(os.getenv("COMMAND_TIMEOUT", "120"))


# ============================================================
# Backend Specifications
# Every backend except Bedrock speaks the OpenAI-compatible
# /chat/completions protocol. Rate limits are tokens per window.
# ============================================================
BACKEND_SPECS: List[Dict[str, Any]] = [
    {
        "id": "openrouter",
        "name": "OpenRouter",
        "kind": "openai",
        "base_url": "https://openrouter.ai/api/v1",
        "api_key_env": "OPENROUTER_API_KEY",
        "headers": {"X-Title": "Vibe Runtime"},
        "models": [
            "anthropic/claude-3.5-sonnet",
            "openai/gpt-4o",
            "meta-llama/llama-3.1-405b-instruct",
            "x-ai/grok-2-1212",
        ],
        "tokens_per_window": 100000,
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 10.0,
    },
    {
        "id": "megallm",
        "name": "MegaLLM",
        "kind": "openai",
        "base_url": "https://ai.megallm.io/v1",
        "api_key_env": "MEGALLM_API_KEY",
        "models": [
            "qwen/qwen3-next-80b-instruct",
            "deepseek/deepseek-v3",
        ],
        "tokens_per_window": 50000,
        "max_retries": 2,
        "base_delay": 2.0,
        "max_delay": 15.0,
    },
    {
        "id": "agentrouter",
        "name": "AgentRouter",
        "kind": "openai",
        "base_url": "https://api.agentrouter.io/v1",
        "api_key_env": "AGENTROUTER_API_KEY",
        "headers": {"User-Agent": "Vibe Runtime"},
        "models": [
            "anthropic/claude-3.5-sonnet",
            "anthropic/claude-3-haiku",
        ],
        "tokens_per_window": 30000,
        "max_retries": 2,
        "base_delay": 3.0,
        "max_delay": 20.0,
    },
    {
        "id": "routeway",
        "name": "Routeway",
        "kind": "openai",
        "base_url": "https://api.routeway.ai/v1",
        "api_key_env": "ROUTEWAY_API_KEY",
        "headers": {"User-Agent": "Vibe Runtime"},
        "models": [
            "anthropic/claude-3.5-sonnet",
            "openai/gpt-4o-mini",
        ],
        "tokens_per_window": 40000,
        "max_retries": 2,
        "base_delay": 2.5,
        "max_delay": 18.0,
    },
    {
        "id": "bedrock",
        "name": "Amazon Bedrock",
        "kind": "bedrock",
        "base_url": "",
        # Bedrock authenticates through the AWS credential chain; the region
        # doubles as the "key" so the router can treat it like any backend.
        "api_key_env": "AWS_REGION",
        "models": [
            "anthropic/claude-3.5-sonnet",
            "anthropic/claude-3-haiku",
        ],
        "model_ids": {
            "anthropic/claude-3.5-sonnet": "anthropic.claude-3-5-sonnet-20241022-v2:0",
            "anthropic/claude-3-haiku": "anthropic.claude-3-haiku-20240307-v1:0",
        },
        "tokens_per_window": 200000,
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 10.0,
    },
]


# Documented substitutes: a backend that serves any of these can stand in for
# the requested model when no backend serves it directly.
MODEL_COMPATIBILITY: Dict[str, List[str]] = {
    "anthropic/claude-3.5-sonnet": [
        "anthropic/claude-3-haiku",
        "openai/gpt-4o",
        "meta-llama/llama-3.1-405b-instruct",
    ],
    "openai/gpt-4o": [
        "openai/gpt-4o-mini",
        "anthropic/claude-3.5-sonnet",
        "meta-llama/llama-3.1-405b-instruct",
    ],
    "meta-llama/llama-3.1-405b-instruct": [
        "qwen/qwen3-next-80b-instruct",
        "deepseek/deepseek-v3",
    ],
}


# Create global config instances
aws_config = AWSConfig()
router_config = RouterConfig()
app_config = AppConfig()


def lookup_api_key(env_name: str) -> Optional[str]:
    """Default credential lookup. Returns None when the key is absent or blank."""
    value = os.getenv(env_name, "").strip()
    return value or None
