"""Read access to per-company AI configuration."""

from __future__ import annotations

import threading
import uuid
from typing import Protocol

from sqlalchemy.orm import Session, sessionmaker

from .ai.prompts import AIConfig
from .exceptions import DataIntegrityError
from .models import Company


class CompanyDirectory(Protocol):
    def get_ai_config(self, company_id: uuid.UUID) -> AIConfig: ...


class SqlCompanyDirectory:
    """Load :class:`AIConfig` from the ``companies`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_ai_config(self, company_id: uuid.UUID) -> AIConfig:
        with self._session_factory() as session:
            company = session.get(Company, company_id)
            if company is None:
                # conversations reference companies by foreign key
                raise DataIntegrityError(f"Company {company_id} does not exist")
            return AIConfig(
                personality=company.ai_personality,
                response_length=company.ai_response_length,
                system_instructions=company.ai_system_prompt or "",
                handoff_triggers=tuple(company.ai_handoff_triggers or ()),
                company_context=company.company_context or "",
                model=company.selected_ai_model,
            )


class InMemoryCompanyDirectory:
    def __init__(self, default: AIConfig | None = None) -> None:
        self._configs: dict[uuid.UUID, AIConfig] = {}
        self._default = default or AIConfig()
        self._lock = threading.Lock()

    def set_ai_config(self, company_id: uuid.UUID, config: AIConfig) -> None:
        with self._lock:
            self._configs[company_id] = config

    def get_ai_config(self, company_id: uuid.UUID) -> AIConfig:
        with self._lock:
            return self._configs.get(company_id, self._default)
