from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import CollectionInvalid, PyMongoError

from orgcluster.models import utcnow

logger = logging.getLogger(__name__)

MARKER_FIELD = "_orgcluster_init"
SERVER_SELECTION_TIMEOUT_MS = 10_000


@dataclass(frozen=True)
class IndexSpec:
    keys: list[tuple[str, int]]
    name: str
    unique: bool = False
    sparse: bool = False


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    description: str
    indexes: list[IndexSpec] = field(default_factory=list)


DEFAULT_COLLECTIONS = (
    CollectionSpec(
        name="form_responses",
        description="Stores all form submission responses",
        indexes=[
            IndexSpec(keys=[("formId", ASCENDING), ("submittedAt", DESCENDING)], name="formId_submittedAt"),
            IndexSpec(keys=[("submittedAt", DESCENDING)], name="submittedAt"),
        ],
    ),
    CollectionSpec(
        name="contacts",
        description="Contact information collected from forms",
        indexes=[
            IndexSpec(keys=[("email", ASCENDING)], name="email", unique=True, sparse=True),
            IndexSpec(keys=[("createdAt", DESCENDING)], name="createdAt"),
        ],
    ),
    CollectionSpec(
        name="workflow_data",
        description="Data produced by workflow executions",
        indexes=[
            IndexSpec(keys=[("workflowId", ASCENDING), ("createdAt", DESCENDING)], name="workflowId_createdAt"),
        ],
    ),
)


class DatabaseInitializer:
    """Give a fresh tenant database its baseline collections.

    Safe to run repeatedly: existing collections are reused, index creation is
    idempotent upstream and the marker document is written once per collection.
    """

    def __init__(
        self,
        *,
        client_factory: Callable[..., Any] = MongoClient,
        collections: tuple[CollectionSpec, ...] = DEFAULT_COLLECTIONS,
    ) -> None:
        self._client_factory = client_factory
        self._collections = collections

    def initialize(self, connection_string: str, database_name: str) -> list[str]:
        client = self._client_factory(connection_string, serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS)
        initialized: list[str] = []
        try:
            database = client[database_name]
            for spec in self._collections:
                try:
                    self._initialize_collection(database, spec)
                except PyMongoError as exc:
                    logger.warning("Could not initialize collection=%s: %s", spec.name, exc)
                    continue
                initialized.append(spec.name)
        finally:
            client.close()
        logger.info("Initialized database=%s collections=%s", database_name, initialized)
        return initialized

    @staticmethod
    def _initialize_collection(database: Any, spec: CollectionSpec) -> None:
        try:
            collection = database.create_collection(spec.name)
            logger.debug("Created collection=%s", spec.name)
        except CollectionInvalid:
            collection = database[spec.name]
            logger.debug("Reusing existing collection=%s", spec.name)

        for index in spec.indexes:
            options: dict[str, Any] = {"name": index.name}
            if index.unique:
                options["unique"] = True
            if index.sparse:
                options["sparse"] = True
            collection.create_index(index.keys, **options)

        if collection.find_one({MARKER_FIELD: True}) is None:
            collection.insert_one(
                {
                    MARKER_FIELD: True,
                    "_description": spec.description,
                    "_createdAt": utcnow(),
                    "_message": "Created automatically. Delete this document once real data arrives.",
                }
            )
