"""
Initializes the Dynaconf settings object for pg_embed.
This module is the single source of truth for all configuration.
"""

from pathlib import Path

from dynaconf import Dynaconf
from pydantic import ValidationError

from .application.exceptions import ConfigurationError
from .infrastructure.settings_models import EmbedOptions

PACKAGE_ROOT = Path(__file__).parent

settings = Dynaconf(
    root_path=PACKAGE_ROOT,
    settings_files=["config/settings.toml"],
    includes=[str(Path.cwd() / "settings.local.toml")],
    envvar_prefix="PG_EMBED",
    merge_enabled=True,
)


def load_options(source: Dynaconf = settings) -> EmbedOptions:
    """
    Validates raw settings into the typed options tree.

    Raises:
        ConfigurationError: If a value has the wrong type or range.
    """
    raw = {key.lower(): value for key, value in source.as_dict().items()}
    try:
        return EmbedOptions.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pg_embed settings: {e}") from e
