import uuid
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
from couchbase.result import MutationResult
from couchbase.n1ql import QueryScanConsistency
from couchbase.options import QueryOptions
from .config import get_cluster, DEFAULT_BUCKET_NAME, DEFAULT_SCOPE_NAME
from .query import Condition, build_count, build_select

@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    @classmethod
    def from_string(cls, keyspace: str) -> 'Keyspace':
        parts = keyspace.split('.')
        if len(parts) != 3:
            raise ValueError(
                "Invalid keyspace format. Expected 'bucket_name.scope_name.collection_name', "
                f"got '{keyspace}'"
            )
        return cls(*parts)

    def __str__(self) -> str:
        return f"`{self.bucket_name}`.`{self.scope_name}`.`{self.collection_name}`"

    async def query(self, query: str, consistent: bool = False, **kwargs) -> list:
        """Run N1QL with *kwargs* as named parameters.

        Index scans are not bounded by default; with *consistent* the query
        waits until the index has caught up with every mutation made so far.
        """
        cluster = await get_cluster()
        query = query.replace("${keyspace}", str(self))
        option_kwargs = {}
        if kwargs:
            option_kwargs["named_parameters"] = kwargs
        if consistent:
            option_kwargs["scan_consistency"] = QueryScanConsistency.REQUEST_PLUS
        result = cluster.query(query, QueryOptions(**option_kwargs))
        return [row async for row in result]

    async def select(
        self,
        conditions: Sequence[Condition],
        order_by: Optional[Sequence[Tuple[str, str]]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        consistent: bool = False,
    ) -> list:
        """Run a structured SELECT; rows come back as ``{'id': ..., '<collection>': {...}}``."""
        query, params = build_select(str(self), conditions, order_by, limit, offset)
        return await self.query(query, consistent=consistent, **params)

    async def count(self, conditions: Sequence[Condition], consistent: bool = False) -> int:
        query, params = build_count(str(self), conditions)
        rows = await self.query(query, consistent=consistent, **params)
        return int(rows[0]["n"]) if rows else 0

    async def get_scope(self):
        cluster = await get_cluster()
        bucket = cluster.bucket(self.bucket_name)
        return bucket.scope(self.scope_name)

    async def get_collection(self):
        scope = await self.get_scope()
        return scope.collection(self.collection_name)

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs) -> MutationResult:
        if key is None:
            key = str(uuid.uuid4())
        collection = await self.get_collection()
        return await collection.insert(key, value, **kwargs)

    async def upsert(self, key: str, value: dict, **kwargs) -> MutationResult:
        """Insert or update a document (idempotent write)."""
        collection = await self.get_collection()
        return await collection.upsert(key, value, **kwargs)

    async def remove(self, key: str, **kwargs) -> int:
        collection = await self.get_collection()
        result = await collection.remove(key, **kwargs)
        return result.cas

def get_keyspace(collection_name: str, scope_name: Optional[str] = DEFAULT_SCOPE_NAME, bucket_name: Optional[str] = DEFAULT_BUCKET_NAME) -> Keyspace:
    """
    Create a Keyspace instance with optional scope and bucket parameters.

    Args:
        collection_name: Name of the collection
        scope_name: Name of the scope (defaults to COUCHBASE_SCOPE or "_default")
        bucket_name: Name of the bucket (defaults to DEFAULT_BUCKET_NAME)

    Returns:
        Keyspace instance
    """
    return Keyspace(bucket_name, scope_name, collection_name)
