"""Azure OpenAI chat model factory for the LLM transport."""

from typing import Optional

from langchain_openai import AzureChatOpenAI

from chatstream.config.settings import settings
from chatstream.utils.logger import logger


def create_llm_client(
    deployment: Optional[str] = None,
    temperature: Optional[float] = None,
) -> AzureChatOpenAI:
    """
    Build a streaming AzureChatOpenAI client from settings.

    Usage metadata is requested on the stream so ``done`` chunks can carry
    token counts.

    Args:
        deployment: Azure deployment to use instead of AZURE_OPENAI_DEPLOYMENT
        temperature: Sampling temperature instead of LLM_TEMPERATURE

    Returns:
        Configured AzureChatOpenAI instance

    Raises:
        ConfigurationError: If required Azure settings are missing
    """
    settings.validate()

    endpoint = settings.AZURE_OPENAI_ENDPOINT.rstrip("/") + "/"
    deployment = deployment or settings.AZURE_OPENAI_DEPLOYMENT
    temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
    logger.info(f"Creating AzureChatOpenAI client (deployment={deployment}, temperature={temperature})")

    client = AzureChatOpenAI(
        azure_endpoint=endpoint,
        azure_deployment=deployment,
        api_key=settings.OPENAI_API_KEY,
        api_version=settings.AZURE_OPENAI_API_VERSION,
        streaming=True,
        stream_usage=True,
        temperature=temperature,
    )

    logger.debug(f"AzureChatOpenAI client ready for {endpoint[:50]}")
    return client
