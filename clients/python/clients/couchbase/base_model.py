import uuid
from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple, TypeVar, Generic, List, ClassVar
from pydantic import BaseModel
from couchbase.exceptions import DocumentNotFoundException
from .keyspace import Keyspace, get_keyspace
from .query import Condition

class BaseCouchbaseEntityData(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by_user_id: Optional[str] = None

DataT = TypeVar("DataT", bound=BaseCouchbaseEntityData)
T = TypeVar("T", bound="BaseModelCouchbase")

class BaseModelCouchbase(BaseModel, Generic[DataT]):
    id: str
    data: DataT
    cas: Optional[int] = None

    _collection_name: ClassVar[str] = ""

    @staticmethod
    def model_dump_with_excluded_attributes(data: DataT) -> dict:
        """
        Converts the model to a dictionary for database storage,
        ensuring fields marked with exclude=True are included.
        """
        doc = data.model_dump(mode='json')

        for field_name, field_info in type(data).model_fields.items():
            if field_info.exclude:
                value = getattr(data, field_name)
                if value is not None:
                    doc[field_name] = value
        return doc

    @classmethod
    def get_keyspace(cls) -> Keyspace:
        if not cls._collection_name:
            raise ValueError(f"_collection_name not set for {cls.__name__}")
        return get_keyspace(cls._collection_name)

    @classmethod
    def _from_row(cls: type[T], row: dict) -> Optional[T]:
        data_dict = row.get(cls._collection_name)
        if not data_dict:
            return None
        return cls(id=row["id"], data=data_dict)

    @classmethod
    async def get(cls: type[T], id: str) -> Optional[T]:
        try:
            collection = await cls.get_keyspace().get_collection()
            result = await collection.get(id)
            data = result.content_as[dict]
            return cls(id=id, data=data, cas=result.cas)
        except DocumentNotFoundException:
            return None

    @classmethod
    async def create(cls: type[T], data: DataT, key: Optional[str] = None, user_id: Optional[str] = None) -> T:
        """Insert a new document.

        With an explicit *key* the insert doubles as a uniqueness guard: a second
        insert under the same key raises ``DocumentExistsException``.
        """
        if key is None:
            key = str(uuid.uuid4())

        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

        if user_id:
            data.created_by_user_id = user_id

        doc = cls.model_dump_with_excluded_attributes(data)
        result = await cls.get_keyspace().insert(doc, key=key)
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def update(cls: type[T], item: T) -> T:
        """Replace the document; raises ``CASMismatchException`` if it changed since *item* was read."""
        collection = await cls.get_keyspace().get_collection()

        item.data.updated_at = datetime.now(timezone.utc)

        doc = cls.model_dump_with_excluded_attributes(item.data)
        if item.cas:
            result = await collection.replace(item.id, doc, cas=item.cas)
        else:
            result = await collection.replace(item.id, doc)
        item.cas = result.cas
        return item

    @classmethod
    async def delete(cls: type[T], id: str) -> bool:
        try:
            await cls.get_keyspace().remove(id)
            return True
        except DocumentNotFoundException:
            return False

    @classmethod
    async def find(
        cls: type[T],
        conditions: Sequence[Condition],
        order_by: Optional[Sequence[Tuple[str, str]]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        consistent: bool = False,
    ) -> List[T]:
        """Documents matching *conditions*.

        Queries go through the index, which may lag recent writes. Pass
        *consistent* when a missing document would lead to a wrong decision.
        """
        rows = await cls.get_keyspace().select(
            conditions, order_by=order_by, limit=limit, offset=offset, consistent=consistent
        )
        items = []
        for row in rows:
            item = cls._from_row(row)
            if item is not None:
                items.append(item)
        return items

    @classmethod
    async def find_one(cls: type[T], conditions: Sequence[Condition], consistent: bool = False) -> Optional[T]:
        items = await cls.find(conditions, limit=1, consistent=consistent)
        return items[0] if items else None

    @classmethod
    async def count(cls, conditions: Sequence[Condition], consistent: bool = False) -> int:
        return await cls.get_keyspace().count(conditions, consistent=consistent)
