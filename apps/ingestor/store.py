"""
Cursor & Snapshot Store

Loads and saves the offer dataset and the incremental-fetch cursor.

Two implementations share one interface:
- LocalSnapshotStore: dataset and cursor JSON files on disk
- GistSnapshotStore: the local files plus a GitHub Gist used as a fallback
  read source and a best-effort write mirror

The local files and the Gist are independent sinks. A failure in one is
logged and never prevents the other from being written.
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import httpx
import orjson
from pydantic import ValidationError

from utils.config import Settings
from utils.errors import GistAccessError
from utils.gist import GistClient
from utils.schemas import Cursor, Offer

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """The best-known dataset and cursor."""

    offers: list[Offer] = field(default_factory=list)
    cursor: Optional[Cursor] = None


def dump_offers(offers: list[Offer]) -> bytes:
    # Records kept verbatim may not match the field types; write them as they are
    records = [offer.model_dump(mode="json", warnings=False) for offer in offers]
    return orjson.dumps(records, option=orjson.OPT_INDENT_2)


def dump_cursor(cursor: Cursor) -> bytes:
    return orjson.dumps(cursor.model_dump(by_alias=True), option=orjson.OPT_INDENT_2)


def parse_offers(raw: bytes | str) -> list[Offer]:
    """Parse a dataset document record by record.

    A record that no longer validates (hand edits, older schema) is kept
    verbatim so that saving the dataset never loses it. Entries that are not
    JSON objects are dropped.

    Raises:
        orjson.JSONDecodeError: If the document is not JSON
        ValueError: If the document is not a JSON array
    """
    payload = orjson.loads(raw)
    if not isinstance(payload, list):
        raise ValueError(f"Dataset must be a JSON array, got {type(payload).__name__}")

    offers: list[Offer] = []
    for index, record in enumerate(payload):
        if not isinstance(record, dict):
            logger.warning("Dropping dataset entry %d: not a JSON object", index)
            continue
        try:
            offers.append(Offer.model_validate(record))
        except ValidationError as e:
            logger.warning(
                "Keeping dataset entry %d unvalidated (%d field error(s))",
                index,
                e.error_count(),
                extra={"company": record.get("company"), "post_id": record.get("post_id")},
            )
            offers.append(Offer.model_construct(**record))
    return offers


def parse_cursor(raw: bytes | str) -> Cursor:
    return Cursor.model_validate(orjson.loads(raw))


class SnapshotStore(ABC):
    """Persistence for the offer dataset and its cursor."""

    @property
    @abstractmethod
    def output_path(self) -> str:
        """Where consumers read the dataset from."""

    @abstractmethod
    async def load(self) -> Snapshot:
        """Return the best-known existing dataset and cursor."""

    @abstractmethod
    async def save(self, offers: list[Offer], cursor: Optional[Cursor]) -> None:
        """Persist the dataset and, when given, the cursor.

        The cursor is stamped with the save time and the dataset size.
        """


class LocalSnapshotStore(SnapshotStore):
    """Dataset and cursor as JSON files on the local filesystem."""

    def __init__(self, dataset_path: str | Path, cursor_path: str | Path) -> None:
        self.dataset_path = Path(dataset_path)
        self.cursor_path = Path(cursor_path)
        self._dataset_unreadable = False

    @property
    def output_path(self) -> str:
        return str(self.dataset_path)

    def _load_local_offers(self) -> list[Offer]:
        if not self.dataset_path.exists():
            return []
        try:
            offers = parse_offers(self.dataset_path.read_bytes())
        except (OSError, ValueError) as e:
            logger.warning(
                "Failed to load existing offers from %s, starting fresh (file will be backed up before saving): %s",
                self.dataset_path,
                e,
            )
            self._dataset_unreadable = True
            return []
        logger.info("Loaded %d existing offers from local file", len(offers))
        return offers

    def _load_local_cursor(self) -> Optional[Cursor]:
        if not self.cursor_path.exists():
            return None
        try:
            cursor = parse_cursor(self.cursor_path.read_bytes())
        except (OSError, ValueError) as e:
            logger.warning("Failed to load cursor from %s, will do full fetch: %s", self.cursor_path, e)
            return None
        logger.info("Incremental mode: last post ID was %s", cursor.last_post_id)
        return cursor

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        """Write via a temp file so readers never see a partial document."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)

    @staticmethod
    def _stamp(cursor: Optional[Cursor], offers: list[Offer]) -> Optional[Cursor]:
        if cursor is None:
            return None
        return cursor.model_copy(
            update={"last_fetch_time": int(time.time() * 1000), "total_offers": len(offers)}
        )

    def _set_aside_unreadable(self) -> bool:
        """Move an unreadable dataset file out of the way instead of overwriting it."""
        if not self._dataset_unreadable or not self.dataset_path.exists():
            return True
        backup_path = self.dataset_path.with_name(f"{self.dataset_path.name}.unreadable-{int(time.time())}")
        try:
            os.replace(self.dataset_path, backup_path)
        except OSError as e:
            logger.error("Refusing to overwrite unreadable dataset %s: %s", self.dataset_path, e)
            return False
        logger.warning("Unreadable dataset moved to %s", backup_path)
        self._dataset_unreadable = False
        return True

    def _save_local(self, offers: list[Offer], cursor: Optional[Cursor]) -> bool:
        if not self._set_aside_unreadable():
            return False

        try:
            self._write_atomic(self.dataset_path, dump_offers(offers))
        except OSError as e:
            logger.error("Failed to save offers to %s: %s", self.dataset_path, e, exc_info=True)
            return False
        logger.info("Saved %d offers to %s", len(offers), self.dataset_path)

        if cursor is not None:
            try:
                self._write_atomic(self.cursor_path, dump_cursor(cursor))
            except OSError as e:
                logger.warning("Failed to save cursor file (non-fatal): %s", e)
        return True

    async def _mirror(self, offers: list[Offer], cursor: Optional[Cursor]) -> None:
        """Copy the saved documents to a secondary sink, if any."""
        return None

    async def load(self) -> Snapshot:
        return Snapshot(offers=self._load_local_offers(), cursor=self._load_local_cursor())

    async def save(self, offers: list[Offer], cursor: Optional[Cursor]) -> None:
        stamped = self._stamp(cursor, offers)
        self._save_local(offers, stamped)
        await self._mirror(offers, stamped)


class GistSnapshotStore(LocalSnapshotStore):
    """Local files backed up to a GitHub Gist."""

    def __init__(
        self,
        dataset_path: str | Path,
        cursor_path: str | Path,
        gist: GistClient,
        dataset_filename: str = "parsed_comps.json",
        cursor_filename: str = ".leetcomp_metadata.json",
    ) -> None:
        super().__init__(dataset_path, cursor_path)
        self.gist = gist
        self.dataset_filename = dataset_filename
        self.cursor_filename = cursor_filename

    async def _load_remote(self) -> Snapshot:
        snapshot = Snapshot()
        try:
            files = await self.gist.read_files(self.dataset_filename, self.cursor_filename)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to load from Gist %s: %s", self.gist.gist_id, e)
            return snapshot

        dataset_raw = files.get(self.dataset_filename)
        if dataset_raw:
            try:
                snapshot.offers = parse_offers(dataset_raw)
                logger.info("Loaded %d existing offers from Gist", len(snapshot.offers))
            except ValueError as e:
                logger.warning("Gist dataset is unreadable: %s", e)

        cursor_raw = files.get(self.cursor_filename)
        if cursor_raw:
            try:
                snapshot.cursor = parse_cursor(cursor_raw)
                logger.info("Incremental mode: last post ID was %s", snapshot.cursor.last_post_id)
            except ValueError as e:
                logger.warning("Gist cursor is unreadable: %s", e)

        return snapshot

    async def load(self) -> Snapshot:
        snapshot = Snapshot(offers=self._load_local_offers())

        if not snapshot.offers:
            remote = await self._load_remote()
            snapshot.offers = remote.offers
            snapshot.cursor = remote.cursor

        if snapshot.cursor is None:
            snapshot.cursor = self._load_local_cursor()

        return snapshot

    async def _mirror(self, offers: list[Offer], cursor: Optional[Cursor]) -> None:
        if not self.gist.can_write:
            logger.info("GITHUB_TOKEN not set, skipping Gist save")
            return

        files: dict[str, Any] = {self.dataset_filename: dump_offers(offers).decode("utf-8")}
        if cursor is not None:
            files[self.cursor_filename] = dump_cursor(cursor).decode("utf-8")

        try:
            await self.gist.verify_write_access()
            await self.gist.update_files(files)
        except GistAccessError as e:
            logger.error("Gist mirror refused: %s", e)
            return
        except httpx.HTTPError as e:
            logger.error("Failed to save to Gist: %s", e)
            return

        logger.info("Saved %d offers to GitHub Gist %s", len(offers), self.gist.gist_id)


def build_store(settings: Settings, gist_transport: Optional[httpx.AsyncBaseTransport] = None) -> SnapshotStore:
    """Pick the store implementation from configuration."""
    if settings.gist_enabled:
        return GistSnapshotStore(
            dataset_path=settings.DATASET_PATH,
            cursor_path=settings.CURSOR_PATH,
            gist=GistClient.from_settings(settings, transport=gist_transport),
            dataset_filename=settings.GIST_DATASET_FILENAME,
            cursor_filename=settings.GIST_CURSOR_FILENAME,
        )
    return LocalSnapshotStore(settings.DATASET_PATH, settings.CURSOR_PATH)
