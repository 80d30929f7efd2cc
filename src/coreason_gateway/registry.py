# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import threading
from typing import Dict, Iterable, List, Optional, Tuple

from coreason_gateway.models import Capability, ModelDefinition
from coreason_gateway.utils.logger import logger


class ModelRegistry:
    """
    Static catalog of (provider, model) definitions, loaded once at startup.
    Models are listed in registration order, which is also the tie-break order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._models: Dict[Tuple[str, str], ModelDefinition] = {}
        self._defaults: Dict[str, str] = {}

    def register_model(self, model: ModelDefinition, default: bool = False) -> None:
        """
        Registers a model in the registry.
        If a model with the same provider and ID exists, it is updated.
        """
        with self._lock:
            self._models[(model.provider, model.id)] = model
            if default or model.provider not in self._defaults:
                self._defaults[model.provider] = model.id
            logger.debug(f"Registered model: {model.provider}/{model.id}")

    def register_models(self, models: Iterable[ModelDefinition], default_model: Optional[str] = None) -> None:
        for model in models:
            self.register_model(model, default=model.id == default_model)

    def get_model(self, provider: str, model_id: str) -> Optional[ModelDefinition]:
        """
        Retrieves a model by provider and ID.
        """
        return self._models.get((provider, model_id))

    def list_models(
        self,
        provider: Optional[str] = None,
        capabilities: Optional[Iterable[Capability]] = None,
    ) -> List[ModelDefinition]:
        """
        Lists all models, optionally filtered by provider and required capabilities.
        """
        with self._lock:
            all_models = list(self._models.values())

        if provider is not None:
            all_models = [m for m in all_models if m.provider == provider]
        if capabilities:
            required = list(capabilities)
            all_models = [m for m in all_models if m.supports(required)]
        return all_models

    def resolve(
        self,
        provider: str,
        capabilities: Iterable[Capability] = (),
        model_hint: Optional[str] = None,
    ) -> Optional[ModelDefinition]:
        """
        Picks the model a provider should serve a request with.

        - With a model hint, the provider must serve exactly that model.
        - Otherwise the provider's default model wins if it is capable,
          then the first capable model in registration order.
        """
        required = list(capabilities)
        if model_hint:
            model = self.get_model(provider, model_hint)
            if model is not None and model.supports(required):
                return model
            return None

        default_id = self._defaults.get(provider)
        if default_id:
            default = self.get_model(provider, default_id)
            if default is not None and default.supports(required):
                return default

        capable = self.list_models(provider=provider, capabilities=required)
        return capable[0] if capable else None

    def providers(self) -> List[str]:
        with self._lock:
            return list(dict.fromkeys(p for p, _ in self._models))

    def clear(self) -> None:
        """
        Clears the registry (useful for testing).
        """
        with self._lock:
            self._models.clear()
            self._defaults.clear()
            logger.debug("ModelRegistry cleared")
