"""
MongoDB storage backend (Motor).

Documents:
    policies              {_id, resource, action}
    roles                 {_id, name, policies: [ObjectId], revision}
    user_permissions      {_id, subject, roles: [ObjectId], policies: [ObjectId], revision}
    user_policies_denorm  {_id, subject, policy_map_key, role_key}

Ids leave the adapter as 24-character hex strings. Transactions need a replica
set; with `use_transactions=False` the transaction unit runs its writes
without one, for standalone servers used in development.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

import motor.motor_asyncio as motor_async
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from iam.features.authorization.exceptions import ConcurrentModificationError, DuplicateRecordError
from iam.features.authorization.repositories.base import (
    AuthorizationStore,
    StoreSession,
    POLICY_FILTER_FIELDS,
    ROLE_FILTER_FIELDS,
    check_denorm_filters,
    check_filter_fields,
)
from iam.features.authorization.schemas import (
    PolicyRecord,
    RoleRecord,
    UserPermissionsRecord,
    UserPoliciesDenormRecord,
    UserRecord,
)
from iam.utils import get_logger


log = get_logger(__name__)

POLICIES = "policies"
ROLES = "roles"
USER_PERMISSIONS = "user_permissions"
USER_POLICIES_DENORM = "user_policies_denorm"

INDEXES = {
    POLICIES: [
        {"keys": [("resource", ASCENDING), ("action", ASCENDING)], "unique": True, "name": "uq_resource_action"},
    ],
    ROLES: [
        {"keys": [("name", ASCENDING)], "unique": True, "name": "uq_name"},
    ],
    USER_PERMISSIONS: [
        {"keys": [("subject", ASCENDING)], "unique": True, "name": "uq_subject"},
        {"keys": [("roles", ASCENDING)], "name": "ix_roles"},
    ],
    USER_POLICIES_DENORM: [
        {"keys": [("subject", ASCENDING), ("policy_map_key", ASCENDING)], "name": "ix_subject_key"},
        {"keys": [("role_key", ASCENDING)], "name": "ix_role_key"},
    ],
}


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse a hex id; anything unparsable cannot match a document."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def _policy_record(doc: Dict[str, Any]) -> PolicyRecord:
    return PolicyRecord(id=str(doc["_id"]), resource=doc["resource"], action=doc["action"])


def _user_permissions_record(doc: Dict[str, Any]) -> UserPermissionsRecord:
    return UserPermissionsRecord(
        id=str(doc["_id"]),
        subject=doc["subject"],
        revision=doc.get("revision", 0),
        role_ids=[str(role_id) for role_id in doc.get("roles", [])],
        policy_ids=[str(policy_id) for policy_id in doc.get("policies", [])],
    )


def _where(where: Dict[str, Any]) -> Dict[str, Any]:
    query = {}
    for field, value in where.items():
        if field == "id":
            query["_id"] = to_object_id(value)
        else:
            query[field] = value
    return query


class MongoStoreSession(StoreSession):

    def __init__(self, db, session, user_collection: str, subject_key: str):
        self.db = db
        self.session = session
        self.user_collection = user_collection
        self.subject_key = subject_key

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    async def get_policy(self, policy_id: str) -> Optional[PolicyRecord]:
        oid = to_object_id(policy_id)
        if oid is None:
            return None
        doc = await self.db[POLICIES].find_one({"_id": oid}, session=self.session)
        return _policy_record(doc) if doc else None

    async def find_policy(self, resource: str, action: str) -> Optional[PolicyRecord]:
        doc = await self.db[POLICIES].find_one({"resource": resource, "action": action}, session=self.session)
        return _policy_record(doc) if doc else None

    async def find_policies(self, where: Optional[Dict[str, Any]] = None) -> List[PolicyRecord]:
        query = _where(check_filter_fields(where, POLICY_FILTER_FIELDS))
        cursor = self.db[POLICIES].find(query, session=self.session).sort("_id", ASCENDING)
        return [_policy_record(doc) async for doc in cursor]

    async def get_policies(self, policy_ids: Iterable[str]) -> List[PolicyRecord]:
        oids = [oid for oid in (to_object_id(policy_id) for policy_id in policy_ids) if oid is not None]
        if not oids:
            return []
        cursor = self.db[POLICIES].find({"_id": {"$in": oids}}, session=self.session).sort("_id", ASCENDING)
        return [_policy_record(doc) async for doc in cursor]

    async def create_policy(self, resource: str, action: str) -> PolicyRecord:
        try:
            result = await self.db[POLICIES].insert_one(
                {"resource": resource, "action": action}, session=self.session
            )
        except DuplicateKeyError as exc:
            raise DuplicateRecordError("policy", resource=resource, action=action) from exc
        return PolicyRecord(id=str(result.inserted_id), resource=resource, action=action)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def _role_records(self, docs: List[Dict[str, Any]]) -> List[RoleRecord]:
        """Resolve the policy references of every role with one query."""
        policy_ids = {str(policy_id) for doc in docs for policy_id in doc.get("policies", [])}
        policies = {policy.id: policy for policy in await self.get_policies(policy_ids)}
        return [
            RoleRecord(
                id=str(doc["_id"]),
                name=doc["name"],
                revision=doc.get("revision", 0),
                policies=[
                    policies[str(policy_id)]
                    for policy_id in doc.get("policies", [])
                    if str(policy_id) in policies
                ],
            )
            for doc in docs
        ]

    async def get_role(self, role_id: str) -> Optional[RoleRecord]:
        oid = to_object_id(role_id)
        if oid is None:
            return None
        doc = await self.db[ROLES].find_one({"_id": oid}, session=self.session)
        if doc is None:
            return None
        return (await self._role_records([doc]))[0]

    async def find_roles(self, where: Optional[Dict[str, Any]] = None) -> List[RoleRecord]:
        query = _where(check_filter_fields(where, ROLE_FILTER_FIELDS))
        cursor = self.db[ROLES].find(query, session=self.session).sort("_id", ASCENDING)
        return await self._role_records([doc async for doc in cursor])

    async def get_roles(self, role_ids: Iterable[str]) -> List[RoleRecord]:
        oids = [oid for oid in (to_object_id(role_id) for role_id in role_ids) if oid is not None]
        if not oids:
            return []
        cursor = self.db[ROLES].find({"_id": {"$in": oids}}, session=self.session).sort("_id", ASCENDING)
        return await self._role_records([doc async for doc in cursor])

    async def count_roles(self, name: str) -> int:
        return await self.db[ROLES].count_documents({"name": name}, session=self.session)

    async def create_role(self, name: str) -> RoleRecord:
        try:
            result = await self.db[ROLES].insert_one(
                {"name": name, "policies": [], "revision": 0}, session=self.session
            )
        except DuplicateKeyError as exc:
            raise DuplicateRecordError("role", name=name) from exc
        return RoleRecord(id=str(result.inserted_id), name=name, revision=0, policies=[])

    async def save_role(self, role: RoleRecord) -> RoleRecord:
        result = await self.db[ROLES].update_one(
            {"_id": to_object_id(role.id), "revision": role.revision},
            {
                "$set": {"policies": [to_object_id(policy_id) for policy_id in role.policy_ids]},
                "$inc": {"revision": 1},
            },
            session=self.session,
        )
        if result.matched_count != 1:
            raise ConcurrentModificationError("role", role.id, role.revision)
        return role.model_copy(update={"revision": role.revision + 1})

    async def delete_role(self, role_id: str) -> None:
        await self.db[ROLES].delete_one({"_id": to_object_id(role_id)}, session=self.session)

    # ------------------------------------------------------------------
    # User permissions
    # ------------------------------------------------------------------

    async def find_user_permissions(self, subject: str) -> Optional[UserPermissionsRecord]:
        doc = await self.db[USER_PERMISSIONS].find_one({"subject": subject}, session=self.session)
        return _user_permissions_record(doc) if doc else None

    async def create_user_permissions(self, subject: str) -> UserPermissionsRecord:
        try:
            result = await self.db[USER_PERMISSIONS].insert_one(
                {"subject": subject, "roles": [], "policies": [], "revision": 0},
                session=self.session,
            )
        except DuplicateKeyError as exc:
            raise DuplicateRecordError("user_permissions", subject=subject) from exc
        return UserPermissionsRecord(id=str(result.inserted_id), subject=subject, revision=0)

    async def save_user_permissions(self, record: UserPermissionsRecord) -> UserPermissionsRecord:
        result = await self.db[USER_PERMISSIONS].update_one(
            {"_id": to_object_id(record.id), "revision": record.revision},
            {
                "$set": {
                    "roles": [to_object_id(role_id) for role_id in record.role_ids],
                    "policies": [to_object_id(policy_id) for policy_id in record.policy_ids],
                },
                "$inc": {"revision": 1},
            },
            session=self.session,
        )
        if result.matched_count != 1:
            raise ConcurrentModificationError("user_permissions", record.id, record.revision)
        return record.model_copy(update={"revision": record.revision + 1})

    async def count_user_permissions_with_role(self, role_id: str) -> int:
        return await self.db[USER_PERMISSIONS].count_documents(
            {"roles": to_object_id(role_id)}, session=self.session
        )

    async def remove_role_from_all_user_permissions(self, role_id: str) -> int:
        oid = to_object_id(role_id)
        result = await self.db[USER_PERMISSIONS].update_many(
            {"roles": oid},
            {"$pull": {"roles": oid}, "$inc": {"revision": 1}},
            session=self.session,
        )
        return result.modified_count

    async def delete_user_permissions(self, subject: str) -> int:
        result = await self.db[USER_PERMISSIONS].delete_many({"subject": subject}, session=self.session)
        return result.deleted_count

    # ------------------------------------------------------------------
    # Denormalized index
    # ------------------------------------------------------------------

    def _denorm_filter(self, subject, policy_map_key, role_key, direct_only) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if subject is not None:
            query["subject"] = subject
        if policy_map_key is not None:
            query["policy_map_key"] = policy_map_key
        if direct_only:
            query["role_key"] = None
        elif role_key is not None:
            query["role_key"] = role_key
        return query

    async def find_granted_keys(self, subject: str, policy_map_keys: Set[str]) -> Set[str]:
        if not policy_map_keys:
            return set()
        keys = await self.db[USER_POLICIES_DENORM].distinct(
            "policy_map_key",
            {"subject": subject, "policy_map_key": {"$in": sorted(policy_map_keys)}},
            session=self.session,
        )
        return set(keys)

    async def find_subjects_with_role(self, role_key: str) -> Set[str]:
        subjects = await self.db[USER_POLICIES_DENORM].distinct(
            "subject", {"role_key": role_key}, session=self.session
        )
        return set(subjects)

    async def find_denorm(
        self,
        subject: Optional[str] = None,
        policy_map_key: Optional[str] = None,
        role_key: Optional[str] = None,
        direct_only: bool = False,
    ) -> List[UserPoliciesDenormRecord]:
        query = self._denorm_filter(subject, policy_map_key, role_key, direct_only)
        cursor = (
            self.db[USER_POLICIES_DENORM]
            .find(query, session=self.session)
            .sort([("subject", ASCENDING), ("policy_map_key", ASCENDING)])
        )
        return [
            UserPoliciesDenormRecord(
                subject=doc["subject"],
                policy_map_key=doc["policy_map_key"],
                role_key=doc.get("role_key"),
            )
            async for doc in cursor
        ]

    async def count_denorm(
        self,
        subject: Optional[str] = None,
        policy_map_key: Optional[str] = None,
        role_key: Optional[str] = None,
        direct_only: bool = False,
    ) -> int:
        query = self._denorm_filter(subject, policy_map_key, role_key, direct_only)
        return await self.db[USER_POLICIES_DENORM].count_documents(query, session=self.session)

    async def insert_denorm(self, rows: List[UserPoliciesDenormRecord]) -> int:
        if not rows:
            return 0
        result = await self.db[USER_POLICIES_DENORM].insert_many(
            [row.model_dump() for row in rows], ordered=True, session=self.session
        )
        return len(result.inserted_ids)

    async def delete_denorm(
        self,
        subject: Optional[str] = None,
        policy_map_key: Optional[str] = None,
        role_key: Optional[str] = None,
        direct_only: bool = False,
    ) -> int:
        check_denorm_filters(subject, policy_map_key, role_key, direct_only)
        query = self._denorm_filter(subject, policy_map_key, role_key, direct_only)
        result = await self.db[USER_POLICIES_DENORM].delete_many(query, session=self.session)
        return result.deleted_count

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _user_filter(self, user_id: Any) -> Dict[str, Any]:
        oid = to_object_id(user_id)
        return {"_id": oid if oid is not None else user_id}

    async def get_user(self, user_id: Any) -> Optional[UserRecord]:
        doc = await self.db[self.user_collection].find_one(self._user_filter(user_id), session=self.session)
        if doc is None:
            return None
        subject = doc.get(self.subject_key)
        return UserRecord(id=str(doc["_id"]), subject=str(subject) if subject not in (None, "") else None)

    async def delete_user(self, user_id: Any) -> None:
        await self.db[self.user_collection].delete_one(self._user_filter(user_id), session=self.session)


class MongoAuthorizationStore(AuthorizationStore):
    """
    Store backed by a MongoDB database.

    Usage:
        store = MongoAuthorizationStore.from_url("mongodb://localhost:27017", "iam", "users", "email")
        await store.initialize()
    """
    backend = "mongo"

    def __init__(
        self,
        client: motor_async.AsyncIOMotorClient,
        database: str,
        user_collection: str,
        subject_key: str,
        use_transactions: bool = True,
    ):
        self.client = client
        self.db = client[database]
        self.user_collection = user_collection
        self.subject_key = subject_key
        self.use_transactions = use_transactions

    @classmethod
    def from_url(
        cls,
        url: str,
        database: str,
        user_collection: str,
        subject_key: str,
        use_transactions: bool = True,
    ) -> "MongoAuthorizationStore":
        client = motor_async.AsyncIOMotorClient(url, tz_aware=True)
        return cls(client, database, user_collection, subject_key, use_transactions)

    async def initialize(self) -> None:
        for collection, indexes in INDEXES.items():
            for index in indexes:
                spec = dict(index)
                keys = spec.pop("keys")
                await self.db[collection].create_index(keys, **spec)
        if not self.use_transactions:
            log.warning("MongoDB transactions disabled; writes of one operation are not atomic")
        log.info(f"Mongo authorization store ready on database {self.db.name}")

    async def close(self) -> None:
        self.client.close()

    def _session(self, session=None) -> MongoStoreSession:
        return MongoStoreSession(self.db, session, self.user_collection, self.subject_key)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[MongoStoreSession]:
        yield self._session()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MongoStoreSession]:
        if not self.use_transactions:
            yield self._session()
            return
        async with await self.client.start_session() as s:
            async with s.start_transaction():
                yield self._session(s)
