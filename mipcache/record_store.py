"""
RecordStore - Loads and stores thumbnail records through an attribute store.
"""

import logging
from typing import Optional

from .attr_store import AttrStore
from .thumbnail_record import ThumbnailRecord

RECORD_ATTR = 'thumb_db'


class RecordStore:
    """
    Thumbnail record persistence that never fails the caller.

    Load failures behave like an absent record; store failures are
    reported through the return value and the log.
    """

    def __init__(
        self,
        attr_store: AttrStore,
        verbose: bool = False,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize record store.

        Args:
            attr_store: Backend keeping per-file attributes
            verbose: Log failures at warning instead of debug level
            logger: Optional logger instance
        """
        self.attrs = attr_store
        self.verbose = verbose
        self.logger = logger or logging.getLogger(__name__)

    def _report(self, msg: str) -> None:
        if self.verbose:
            self.logger.warning(msg)
        else:
            self.logger.debug(msg)

    def load(self, identity: str) -> ThumbnailRecord:
        """Load the record for a source, or an empty record."""
        try:
            data = self.attrs.load_attr(identity, RECORD_ATTR)
        except Exception as e:
            self._report(f"thumbnails: failed to load record for {identity}: {e}")
            return ThumbnailRecord()
        return ThumbnailRecord.from_dict(data)

    def store(self, identity: str, record: ThumbnailRecord) -> bool:
        """Persist a record. Returns False on failure."""
        try:
            self.attrs.store_attr(identity, RECORD_ATTR, record.to_dict())
            return True
        except Exception as e:
            self._report(f"thumbnails: failed to store record for {identity}: {e}")
            return False
