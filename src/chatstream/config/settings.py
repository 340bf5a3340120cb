"""Environment-driven settings for the chatstream client."""

import os
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from chatstream.exceptions import ConfigurationError
from chatstream.utils.logger import logger

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Settings read once from the environment (and a .env file) at import."""

    # Model id sent with each request
    MODEL_NAME: str = os.getenv("MODEL_NAME", "gpt-4o")

    # Azure OpenAI, used by the LLM transport only
    AZURE_OPENAI_ENDPOINT: str = os.getenv("AZURE_OPENAI_ENDPOINT", "")
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    AZURE_OPENAI_DEPLOYMENT: str = os.getenv("AZURE_OPENAI_DEPLOYMENT", "")
    AZURE_OPENAI_API_VERSION: str = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview")
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))

    # Pricing in USD per 1M tokens: (input, output)
    MODEL_PRICING: Dict[str, Tuple[float, float]] = {
        "gpt-4o": (2.50, 10.00),
        "gpt-4o-mini": (0.15, 0.60),
    }
    DEFAULT_PRICING_MODEL: str = "gpt-4o"

    # Conversation
    # Cap on prior messages sent as conversation history with each request
    MAX_HISTORY_MESSAGES: int = int(os.getenv("MAX_HISTORY_MESSAGES", "100"))

    # Options: "reject", "replace"
    OVERLAP_POLICY: str = os.getenv("OVERLAP_POLICY", "reject")

    # Ask the transport to redo an answer instead of resending the user input
    REGENERATE_VIA_TRANSPORT: bool = _env_bool("REGENERATE_VIA_TRANSPORT", "false")

    # Logging
    ENABLE_CORRELATION_IDS: bool = _env_bool("ENABLE_CORRELATION_IDS", "true")

    # Demo transport
    DEMO_CHUNK_SIZE: int = int(os.getenv("DEMO_CHUNK_SIZE", "5"))
    DEMO_TOKEN_DELAY_MS: int = int(os.getenv("DEMO_TOKEN_DELAY_MS", "30"))

    _REQUIRED_FOR_LLM = (
        ("AZURE_OPENAI_ENDPOINT", "Format: https://<your-resource-name>.openai.azure.com/"),
        ("OPENAI_API_KEY", "The key of your Azure OpenAI resource."),
        ("AZURE_OPENAI_DEPLOYMENT", "The name of your Azure OpenAI deployment."),
    )

    @classmethod
    def validate(cls) -> None:
        """
        Check the settings the LLM transport depends on.

        The demo transport needs none of them, so this runs only when an
        Azure client is created.

        Raises:
            ConfigurationError: If a required variable is empty or a value is invalid
        """
        for name, hint in cls._REQUIRED_FOR_LLM:
            if not getattr(cls, name):
                logger.error(f"{name} is not set")
                raise ConfigurationError(
                    f"{name} environment variable is required for the LLM transport. {hint}"
                )

        if cls.OVERLAP_POLICY not in ("reject", "replace"):
            logger.error(f"Invalid OVERLAP_POLICY: {cls.OVERLAP_POLICY}")
            raise ConfigurationError(
                f"OVERLAP_POLICY must be 'reject' or 'replace', got '{cls.OVERLAP_POLICY}'"
            )

        logger.debug(
            f"LLM settings OK (deployment={cls.AZURE_OPENAI_DEPLOYMENT}, "
            f"api_version={cls.AZURE_OPENAI_API_VERSION})"
        )

    @classmethod
    def calculate_cost(
        cls, input_tokens: int, output_tokens: int, model_name: Optional[str] = None
    ) -> float:
        """
        Estimate the USD cost of a response.

        Unknown models are priced as DEFAULT_PRICING_MODEL.

        Args:
            input_tokens: Prompt tokens
            output_tokens: Completion tokens
            model_name: Model id used for the response

        Returns:
            Cost in USD
        """
        input_price, output_price = cls.MODEL_PRICING.get(
            model_name or cls.DEFAULT_PRICING_MODEL, cls.MODEL_PRICING[cls.DEFAULT_PRICING_MODEL]
        )
        return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


settings = Settings()
