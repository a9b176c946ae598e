"""
Exception hierarchy shared by the relay engine and the API layer
"""

from typing import Optional


class RelayError(Exception):
    """Base class for every error raised by the relay"""


class StoreError(RelayError):
    """A collection could not be read from or written to its backing store"""

    def __init__(self, collection: str, message: str):
        self.collection = collection
        super().__init__(f"{collection}: {message}")


class RuleValidationError(RelayError):
    """A rule payload was rejected before it reached the store"""


class RuleNotFoundError(RelayError):
    """No rule with the given id exists in the collection"""

    def __init__(self, kind: str, rule_id: str):
        self.kind = kind
        self.rule_id = rule_id
        super().__init__(f"No {kind} rule with id {rule_id}")


class RecordNotFoundError(RelayError):
    """A captured or intercepted record could not be found"""

    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"No record {record_id} in {collection}")


class UpstreamError(RelayError):
    """The origin could not be reached or did not answer in time"""

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)
