from .config import (
    DEFAULT_BUCKET_NAME,
    DEFAULT_SCOPE_NAME,
    HOST,
    PROTOCOL,
    get_cluster,
    get_default_bucket,
    check_connection
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .query import (
    Condition,
    where,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T
)
from .cas import (
    CasResult,
    cas_retry,
)

from couchbase.exceptions import CASMismatchException, DocumentExistsException, DocumentNotFoundException
