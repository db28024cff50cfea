import hashlib
import sys
from pathlib import Path
from typing import Any


def apply_common_settings(
    settings: Any | None,
    settings_class: type[Any],
    model_config: Any,
) -> Any | None:
    """Apply temperature and max_tokens from a ModelConfig to model settings."""
    if model_config.temperature is None and model_config.max_tokens is None:
        return settings

    settings_dict = settings_class() if settings is None else settings

    if model_config.temperature is not None:
        settings_dict["temperature"] = model_config.temperature

    if model_config.max_tokens is not None:
        settings_dict["max_tokens"] = model_config.max_tokens

    return settings_dict


def get_model(
    model_config: Any,
    app_config: Any | None = None,
) -> Any:
    """
    Get a pydantic-ai model instance for the specified configuration.

    Args:
        model_config: ModelConfig with provider, model, and settings
        app_config: AppConfig for provider base URLs (defaults to global Config)

    Returns:
        A configured model instance, or a "provider:name" string for providers
        pydantic-ai resolves on its own.
    """
    from pydantic_ai.models.openai import OpenAIChatModel, OpenAIChatModelSettings
    from pydantic_ai.providers.ollama import OllamaProvider
    from pydantic_ai.providers.openai import OpenAIProvider

    if app_config is None:
        from neuro.raptor.config import Config

        app_config = Config

    provider = model_config.provider
    model = model_config.name

    if provider in ("ollama", "vllm", "lm_studio"):
        model_settings = None

        # gpt-oss exposes reasoning effort instead of a thinking switch
        if model == "gpt-oss" and model_config.enable_thinking is not None:
            model_settings = OpenAIChatModelSettings(
                openai_reasoning_effort="high" if model_config.enable_thinking else "low"
            )

        model_settings = apply_common_settings(
            model_settings, OpenAIChatModelSettings, model_config
        )

        if provider == "ollama":
            chat_provider = OllamaProvider(
                base_url=f"{app_config.providers.ollama.base_url}/v1"
            )
        elif provider == "vllm":
            chat_provider = OpenAIProvider(
                base_url=f"{app_config.providers.vllm.base_url}/v1", api_key="none"
            )
        else:
            chat_provider = OpenAIProvider(
                base_url=f"{app_config.providers.lm_studio.base_url}/v1",
                api_key="dummy",
            )

        return OpenAIChatModel(
            model_name=model, provider=chat_provider, settings=model_settings
        )

    elif provider == "openai":
        openai_settings: Any = None

        if model_config.enable_thinking is not None:
            openai_settings = OpenAIChatModelSettings(
                openai_reasoning_effort="high" if model_config.enable_thinking else "low"
            )

        openai_settings = apply_common_settings(
            openai_settings, OpenAIChatModelSettings, model_config
        )

        return OpenAIChatModel(model_name=model, settings=openai_settings)

    elif provider == "anthropic":
        from pydantic_ai.models.anthropic import AnthropicModel, AnthropicModelSettings

        anthropic_settings: Any = None

        if model_config.enable_thinking is not None:
            if model_config.enable_thinking:
                anthropic_settings = AnthropicModelSettings(
                    anthropic_thinking={"type": "enabled", "budget_tokens": 4096}
                )
            else:
                anthropic_settings = AnthropicModelSettings(
                    anthropic_thinking={"type": "disabled"}
                )

        anthropic_settings = apply_common_settings(
            anthropic_settings, AnthropicModelSettings, model_config
        )

        return AnthropicModel(model_name=model, settings=anthropic_settings)

    else:
        return f"{provider}:{model}"


def get_default_data_dir() -> Path:
    """Get the user data directory for the current system platform.

    Linux: ~/.local/share/neuro.raptor
    macOS: ~/Library/Application Support/neuro.raptor
    Windows: C:/Users/<USER>/AppData/Roaming/neuro.raptor

    Returns:
        User Data Path.
    """
    home = Path.home()

    system_paths = {
        "win32": home / "AppData/Roaming/neuro.raptor",
        "linux": home / ".local/share/neuro.raptor",
        "darwin": home / "Library/Application Support/neuro.raptor",
    }

    return system_paths.get(sys.platform, home / ".neuro.raptor")


def content_hash(text: str) -> str:
    """SHA-256 hex digest of a text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def index_path_for(root: Path, data_dir: Path) -> Path:
    """Location of the persisted index for a corpus root."""
    digest = hashlib.sha1(str(root.resolve()).encode("utf-8")).hexdigest()[:16]
    return data_dir / "indexes" / f"raptor_{digest}.lancedb"
