"""Process-wide stores for the HTTP layer.

    data/
      saved-contexts.json   every saved story context (ContextStore)
      config.json           model connections, pacing, history cap (ConfigStore)

Call init_storage() once before serving; routes reach the stores through
contexts() and config_store().
"""

import logging
import random
from pathlib import Path

from storyloom.config import ConfigStore, model_config_from_env
from storyloom.history import ConversationHistory
from storyloom.models import ConversationMessage, ModelConfig
from storyloom.pipeline import Pacing, SessionContext
from storyloom.storage import ContextStore, FileBlobStore

logger = logging.getLogger(__name__)

_data_dir: Path | None = None
_contexts: ContextStore | None = None
_config: ConfigStore | None = None


def init_storage(data_dir: Path) -> None:
    global _data_dir, _contexts, _config
    _data_dir = Path(data_dir)
    _contexts = ContextStore(FileBlobStore(_data_dir))
    _config = ConfigStore(_data_dir)
    logger.info("Storage initialised at %s", _data_dir)


def data_dir() -> Path:
    assert _data_dir is not None, "Call init_storage() before using storage"
    return _data_dir


def contexts() -> ContextStore:
    assert _contexts is not None, "Call init_storage() before using storage"
    return _contexts


def config_store() -> ConfigStore:
    assert _config is not None, "Call init_storage() before using storage"
    return _config


def resolve_model_config(override: ModelConfig | None = None) -> ModelConfig:
    """Request override, else stored active provider, else environment.

    The stored config is used even without credentials when nothing else has
    any, which sends every generation down the fallback path.
    """
    if override is not None:
        return override
    stored = config_store().model_config()
    if stored.has_credentials:
        return stored
    return model_config_from_env() or stored


def build_session(
    model_config: ModelConfig | None,
    history: list[ConversationMessage],
    seed: int | None = None,
) -> SessionContext:
    settings = config_store().get_config()
    return SessionContext(
        model_config=resolve_model_config(model_config),
        history=ConversationHistory(history, cap=settings["history_cap"]),
        rng=random.Random(seed),
        pacing=Pacing.from_config(settings["pacing"]),
    )
