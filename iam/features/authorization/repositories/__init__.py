from iam.features.authorization.repositories.base import AuthorizationStore, StoreSession
from iam.features.authorization.repositories.sql import SqlAuthorizationStore

__all__ = ["AuthorizationStore", "StoreSession", "SqlAuthorizationStore"]
