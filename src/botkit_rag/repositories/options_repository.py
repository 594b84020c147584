"""Named application options (locks and run markers)."""

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from botkit_rag.database.models import AppOption, utcnow
from botkit_rag.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class OptionsRepository(BaseRepository[AppOption]):
    def __init__(self, session: Session):
        super().__init__(AppOption, session)

    def get_value(self, key: str, default: Optional[Any] = None) -> Any:
        option = self.get_by_id(key)
        if option is None or option.value is None:
            return default
        return option.value

    def set_value(self, key: str, value: Any) -> AppOption:
        option = self.get_by_id(key)
        if option is None:
            return self.create(key=key, value=value)
        option.value = value
        option.updated_at = utcnow()
        self.session.flush()
        return option
