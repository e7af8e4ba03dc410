class StoreError(Exception):
    """Base class for every error raised by the document store."""
    pass


class IndexUnavailableError(StoreError):
    """The query needs a compound index that is not provisioned (yet)."""

    def __init__(self, index_name: str):
        self.index_name = index_name
        super().__init__(f"The query requires an index that is not available: {index_name}")


class StorePermissionError(StoreError):
    """The store refused the command for the configured credentials."""
    pass


class StoreConnectionError(StoreError):
    """The store could not be reached or timed out."""
    pass


class DocumentNotFoundError(StoreError):
    """An update targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"No document to update: {collection}/{doc_id}")


class BatchLimitExceededError(StoreError):
    """A batch holds more operations than the store accepts in one commit."""
    pass


class ConcurrentModificationError(StoreError):
    """Watched documents kept changing while a batch was being committed."""
    pass
