import pytest
from pymongo.errors import OperationFailure

from orgcluster.services.bootstrap import MARKER_FIELD, DatabaseInitializer
from tests.fakes import FakeMongoClient

CONNECTION_STRING = "mongodb+srv://orgcluster-g_abc123:pw@forms-abc123.abcde.mongodb.net/forms"


class RecordingFactory:
    def __init__(self) -> None:
        self.databases: dict = {}
        self.clients: list[FakeMongoClient] = []

    def __call__(self, connection_string, **kwargs):
        client = FakeMongoClient(connection_string, databases=self.databases, **kwargs)
        self.clients.append(client)
        return client


def test_initialize_creates_collections_and_indexes():
    factory = RecordingFactory()

    created = DatabaseInitializer(client_factory=factory).initialize(CONNECTION_STRING, "forms")

    assert created == ["form_responses", "contacts", "workflow_data"]
    database = factory.databases["forms"]
    contacts = database.collections["contacts"]
    assert contacts.indexes[0] == ([("email", 1)], {"name": "email", "unique": True, "sparse": True})
    assert contacts.indexes[1] == ([("createdAt", -1)], {"name": "createdAt"})
    responses = database.collections["form_responses"]
    assert [options["name"] for _, options in responses.indexes] == ["formId_submittedAt", "submittedAt"]
    marker = responses.find_one({MARKER_FIELD: True})
    assert marker["_description"] == "Stores all form submission responses"

    client = factory.clients[0]
    assert client.connection_string == CONNECTION_STRING
    assert client.kwargs == {"serverSelectionTimeoutMS": 10_000}
    assert client.closed is True


def test_initialize_twice_reuses_collections():
    factory = RecordingFactory()
    initializer = DatabaseInitializer(client_factory=factory)

    initializer.initialize(CONNECTION_STRING, "forms")
    second = initializer.initialize(CONNECTION_STRING, "forms")

    assert second == ["form_responses", "contacts", "workflow_data"]
    for collection in factory.databases["forms"].collections.values():
        markers = [doc for doc in collection.documents if doc.get(MARKER_FIELD)]
        assert len(markers) == 1


def test_one_failing_collection_does_not_stop_the_rest():
    factory = RecordingFactory()
    database = factory.databases.setdefault("forms", FakeMongoClient("unused")["forms"])
    database.create_collection("contacts").raise_on_index = OperationFailure("not authorized")

    created = DatabaseInitializer(client_factory=factory).initialize(CONNECTION_STRING, "forms")

    assert created == ["form_responses", "workflow_data"]
    assert factory.clients[0].closed is True


def test_client_is_closed_when_setup_raises():
    factory = RecordingFactory()
    initializer = DatabaseInitializer(client_factory=factory)
    factory.databases["forms"] = None

    with pytest.raises(AttributeError):
        initializer.initialize(CONNECTION_STRING, "forms")

    assert factory.clients[0].closed is True
