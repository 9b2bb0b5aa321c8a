"""MongoDB provider.

Queries are written in a small subset of the mongo shell syntax and parsed
into a method name plus decoded arguments; nothing is ever evaluated::

    db.users.find({age: {$gt: 21}}, {name: 1}).sort({name: 1}).limit(10)
    db.getCollection("audit.log").countDocuments({})
    db.getCollectionNames()
    db.runCommand({dbStats: 1})

Arguments may be strict JSON, MongoDB extended JSON, or relaxed shell
literals (bare keys, single quoted strings, ObjectId("..."), ISODate("...")).
"""
import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote_plus, urlencode

from bson import json_util
from bson.objectid import ObjectId
from pymongo import AsyncMongoClient

from db.providers.base import DatabaseProvider
from models.types import (
    CollectionInfo,
    ColumnInfo,
    ConnectionConfig,
    ConnectionState,
    DatabaseInfo,
    DatabaseType,
    FieldInfo,
    QueryField,
    QueryResult,
    TableInfo,
)

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "test"
AUTH_DATABASE = "admin"
FIELD_SAMPLE_SIZE = 10
FIELD_MAX_DEPTH = 2

READ_METHODS = {
    "find",
    "findOne",
    "countDocuments",
    "estimatedDocumentCount",
    "distinct",
    "aggregate",
}
WRITE_METHODS = {
    "insertOne",
    "insertMany",
    "updateOne",
    "updateMany",
    "replaceOne",
    "deleteOne",
    "deleteMany",
}
CURSOR_MODIFIERS = {"sort", "skip", "limit"}

# shell helpers rewritten into extended JSON before decoding
_SHELL_HELPERS = {
    "ObjectId": "$oid",
    "ISODate": "$date",
    "NumberLong": "$numberLong",
    "NumberInt": "$numberInt",
    "NumberDecimal": "$numberDecimal",
}
_LITERALS = {"true", "false", "null"}
_IDENT_RE = re.compile(r"[A-Za-z_$][\w$]*")


class ShellSyntaxError(ValueError):
    """The query text is not in the supported shell subset."""


@dataclass
class ShellQuery:
    method: str
    args: List[Any] = field(default_factory=list)
    collection: Optional[str] = None
    modifiers: List[Tuple[str, List[Any]]] = field(default_factory=list)


# --- parsing ---

def _skip_string(text: str, i: int) -> int:
    """Return the index just past the quoted string starting at i."""
    quote = text[i]
    i += 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1
        i += 1
    raise ShellSyntaxError("Unterminated string literal")


def _matching_paren(text: str, start: int) -> int:
    """Index of the ')' closing the '(' at start."""
    depth = 0
    i = start
    while i < len(text):
        ch = text[i]
        if ch in "'\"":
            i = _skip_string(text, i)
            continue
        if ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
            if depth == 0:
                if ch != ")":
                    raise ShellSyntaxError("Mismatched brackets")
                return i
        i += 1
    raise ShellSyntaxError("Missing closing parenthesis")


def _split_args(text: str) -> List[str]:
    parts = []
    depth = 0
    current = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in "'\"":
            end = _skip_string(text, i)
            current.append(text[i:end])
            i = end
            continue
        if ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    tail = "".join(current).strip()
    if tail or parts:
        parts.append(tail)
    if any(not p for p in parts):
        raise ShellSyntaxError("Empty argument")
    return parts


def _single_to_json(literal: str) -> str:
    """Re-encode a single quoted shell string as a JSON string."""
    body = literal[1:-1]
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            out.append("'" if nxt == "'" else ch + nxt)
            i += 2
            continue
        out.append('\\"' if ch == '"' else ch)
        i += 1
    return '"' + "".join(out) + '"'


def relaxed_to_json(text: str) -> str:
    """Turn relaxed shell literal syntax into strict (extended) JSON text."""
    out = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            end = _skip_string(text, i)
            out.append(text[i:end])
            i = end
            continue
        if ch == "'":
            end = _skip_string(text, i)
            out.append(_single_to_json(text[i:end]))
            i = end
            continue
        m = _IDENT_RE.match(text, i)
        if m and (i == 0 or not (text[i - 1].isalnum() or text[i - 1] in "._")):
            word = m.group(0)
            j = m.end()
            while j < n and text[j].isspace():
                j += 1
            if j < n and text[j] == ":":
                out.append(json.dumps(word))
            elif word in _SHELL_HELPERS and j < n and text[j] == "(":
                close = _matching_paren(text, j)
                inner = text[j + 1:close].strip()
                if inner.startswith("'"):
                    inner = _single_to_json(inner)
                elif not inner.startswith('"'):
                    inner = json.dumps(inner)
                out.append('{"%s": %s}' % (_SHELL_HELPERS[word], inner))
                i = close + 1
                continue
            elif word in _LITERALS:
                out.append(word)
            else:
                raise ShellSyntaxError(f"Unsupported expression: {word}")
            i = m.end()
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def parse_argument(text: str) -> Any:
    try:
        return json_util.loads(relaxed_to_json(text))
    except ShellSyntaxError:
        raise
    except ValueError as e:
        raise ShellSyntaxError(f"Invalid argument {text!r}: {e}") from None


def _read_call(text: str, i: int) -> Tuple[str, List[Any], int]:
    """Read `name(args)` at i; returns name, decoded args and the next index."""
    m = _IDENT_RE.match(text, i)
    if not m:
        raise ShellSyntaxError(f"Expected a method name at position {i}")
    j = m.end()
    if j >= len(text) or text[j] != "(":
        raise ShellSyntaxError(f"Expected '(' after {m.group(0)}")
    close = _matching_paren(text, j)
    args = [parse_argument(a) for a in _split_args(text[j + 1:close])]
    return m.group(0), args, close + 1


def parse_shell_query(query: str) -> ShellQuery:
    text = (query or "").strip().rstrip(";").strip()
    if not text.startswith("db."):
        raise ShellSyntaxError("Query must start with 'db.'")
    i = 3

    collection = None
    if text.startswith("getCollection(", i):
        name, args, i = _read_call(text, i)
        if len(args) != 1 or not isinstance(args[0], str):
            raise ShellSyntaxError("getCollection() takes one collection name")
        collection = args[0]
        if text[i:i + 1] != ".":
            raise ShellSyntaxError("Expected a method call")
        i += 1
    else:
        # collection names may contain dots: db.system.users.find()
        parts = []
        while True:
            m = _IDENT_RE.match(text, i)
            if not m:
                raise ShellSyntaxError(f"Expected a name at position {i}")
            after = m.end()
            if after < len(text) and text[after] == "(":
                break
            parts.append(m.group(0))
            if after >= len(text) or text[after] != ".":
                raise ShellSyntaxError("Expected a method call")
            i = after + 1
        if parts:
            collection = ".".join(parts)
        else:
            method, args, i = _read_call(text, i)
            if i != len(text):
                raise ShellSyntaxError(f"Unexpected text after {method}()")
            if method not in ("getCollectionNames", "runCommand"):
                raise ShellSyntaxError(f"Unsupported database method: {method}")
            return ShellQuery(method=method, args=args)

    method, args, i = _read_call(text, i)
    if method not in READ_METHODS and method not in WRITE_METHODS:
        raise ShellSyntaxError(f"Unsupported collection method: {method}")

    modifiers = []
    while i < len(text):
        if text[i] != ".":
            raise ShellSyntaxError(f"Unexpected text at position {i}")
        name, margs, i = _read_call(text, i + 1)
        if name not in CURSOR_MODIFIERS:
            raise ShellSyntaxError(f"Unsupported cursor method: {name}")
        if method != "find":
            raise ShellSyntaxError(f"{name}() can only follow find()")
        modifiers.append((name, margs))
    return ShellQuery(method=method, args=args, collection=collection, modifiers=modifiers)


# --- field sampling ---

def _value_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, ObjectId):
        return "objectId"
    return type(value).__name__


def _collect_fields(doc: Dict[str, Any], found: Dict[str, List[str]], prefix: str = "", depth: int = 0) -> None:
    for key, value in doc.items():
        name = f"{prefix}.{key}" if prefix else key
        typ = _value_type(value)
        types = found.setdefault(name, [])
        if typ not in types:
            types.append(typ)
        if typ == "object" and depth < FIELD_MAX_DEPTH:
            _collect_fields(value, found, name, depth + 1)


def _has_field(doc: Dict[str, Any], name: str) -> bool:
    current: Any = doc
    for part in name.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return False
    return True


def infer_document_fields(samples: List[Dict[str, Any]]) -> List[FieldInfo]:
    found: Dict[str, List[str]] = {}
    for doc in samples:
        _collect_fields(doc, found)
    return [
        FieldInfo(name=name, type=" | ".join(types), is_required=all(_has_field(d, name) for d in samples))
        for name, types in found.items()
    ]


def _sort_spec(value: Any) -> List[Tuple[str, int]]:
    if isinstance(value, dict):
        return [(k, int(v)) for k, v in value.items()]
    if isinstance(value, list):
        return [(k, int(v)) for k, v in value]
    raise ShellSyntaxError("sort() takes a document")


def _write_result(method: str, result: Any) -> Dict[str, Any]:
    if method == "insertOne":
        return {"acknowledged": result.acknowledged, "insertedId": result.inserted_id}
    if method == "insertMany":
        return {"acknowledged": result.acknowledged, "insertedIds": list(result.inserted_ids)}
    if method in ("deleteOne", "deleteMany"):
        return {"acknowledged": result.acknowledged, "deletedCount": result.deleted_count}
    return {
        "acknowledged": result.acknowledged,
        "matchedCount": result.matched_count,
        "modifiedCount": result.modified_count,
        "upsertedId": result.upserted_id,
    }


def _affected(row: Dict[str, Any]) -> int:
    for key in ("deletedCount", "modifiedCount"):
        if key in row:
            return int(row[key] or 0)
    if "insertedIds" in row:
        return len(row["insertedIds"])
    return 1


class MongoDBProvider(DatabaseProvider):
    db_type = DatabaseType.MONGODB
    display_name = "MongoDB"
    requires_database = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client: Optional[AsyncMongoClient] = None

    @staticmethod
    def build_uri(config: ConnectionConfig, password: str) -> str:
        auth = ""
        if config.username:
            auth = quote_plus(config.username)
            if password:
                auth += ":" + quote_plus(password)
            auth += "@"
        query = {k: str(v) for k, v in (config.options or {}).items() if v is not None}
        if config.ssl:
            query.setdefault("tls", "true")
        suffix = "?" + urlencode(query) if query else ""
        database = quote_plus(config.database or AUTH_DATABASE)
        return f"mongodb://{auth}{config.host}:{config.port}/{database}{suffix}"

    def _create_client(self, config: ConnectionConfig, password: str, timeout: float) -> AsyncMongoClient:
        timeout_ms = int(timeout * 1000)
        return AsyncMongoClient(
            self.build_uri(config, password),
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
        )

    async def connect(self, config: ConnectionConfig, password: str) -> None:
        self._set_state(ConnectionState.CONNECTING)
        client = None
        try:
            if self._client is not None:
                old, self._client = self._client, None
                await old.close()
            client = self._create_client(config, password, self.connect_timeout)
            await client.admin.command("ping")
        except Exception as e:
            self._set_state(ConnectionState.ERROR)
            logger.error("MongoDB connection to %s:%s failed: %s", config.host, config.port, e)
            if client is not None:
                await client.close()
            raise
        self._client = client
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to MongoDB: %s:%s", config.host, config.port)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        try:
            if client is not None:
                await client.close()
        finally:
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from MongoDB")

    async def test_connection(self, config: ConnectionConfig, password: str) -> bool:
        client = None
        try:
            client = self._create_client(config, password, self.test_timeout)
            await asyncio.wait_for(client.admin.command("ping"), timeout=self.test_timeout)
            return True
        except Exception as e:
            logger.error("MongoDB connection test failed: %s", e)
            return False
        finally:
            if client is not None:
                await client.close()

    async def get_collections(self, database: str) -> List[CollectionInfo]:
        self.ensure_connected()
        db = self._client[database]
        out = []
        for name in sorted(await db.list_collection_names()):
            try:
                count = await db[name].estimated_document_count()
            except Exception as e:
                logger.warning("Could not count %s.%s: %s", database, name, e)
                count = None
            out.append(CollectionInfo(name=name, document_count=count))
        return out

    async def get_databases(self) -> List[DatabaseInfo]:
        self.ensure_connected()
        names = await self._client.list_database_names()
        return [DatabaseInfo(name=name, collections=await self.get_collections(name)) for name in names]

    async def get_fields(self, database: str, collection: str) -> List[FieldInfo]:
        self.ensure_connected()
        cursor = self._client[database][collection].find().limit(FIELD_SAMPLE_SIZE)
        samples = await cursor.to_list(length=FIELD_SAMPLE_SIZE)
        return infer_document_fields(samples)

    async def get_tables(self, database: Optional[str] = None) -> List[TableInfo]:
        return []

    async def get_columns(self, database: Optional[str], table: str, schema: Optional[str] = None) -> List[ColumnInfo]:
        return []

    async def _run_shell(self, db, parsed: ShellQuery) -> Any:
        args = parsed.args
        if parsed.collection is None:
            if parsed.method == "getCollectionNames":
                return [{"name": n} for n in sorted(await db.list_collection_names())]
            if len(args) != 1 or not isinstance(args[0], dict):
                raise ShellSyntaxError("runCommand() takes one command document")
            return await db.command(args[0])

        coll = db[parsed.collection]
        method = parsed.method
        if method == "find":
            cursor = coll.find(*args[:2])
            for name, margs in parsed.modifiers:
                if len(margs) != 1:
                    raise ShellSyntaxError(f"{name}() takes one argument")
                if name == "sort":
                    cursor = cursor.sort(_sort_spec(margs[0]))
                elif name == "skip":
                    cursor = cursor.skip(int(margs[0]))
                else:
                    cursor = cursor.limit(int(margs[0]))
            return await cursor.to_list(length=None)
        if method == "findOne":
            doc = await coll.find_one(*args[:2])
            return [doc] if doc is not None else []
        if method == "countDocuments":
            return {"count": await coll.count_documents(args[0] if args else {})}
        if method == "estimatedDocumentCount":
            return {"count": await coll.estimated_document_count()}
        if method == "distinct":
            if not args:
                raise ShellSyntaxError("distinct() needs a field name")
            values = await coll.distinct(args[0], args[1] if len(args) > 1 else None)
            return [{"value": v} for v in values]
        if method == "aggregate":
            cursor = await coll.aggregate(args[0] if args else [])
            return await cursor.to_list(length=None)

        handler = {
            "insertOne": coll.insert_one,
            "insertMany": coll.insert_many,
            "updateOne": coll.update_one,
            "updateMany": coll.update_many,
            "replaceOne": coll.replace_one,
            "deleteOne": coll.delete_one,
            "deleteMany": coll.delete_many,
        }[method]
        if not args:
            raise ShellSyntaxError(f"{method}() needs at least one argument")
        return _write_result(method, await handler(*args))

    async def execute_query(self, query: str, database: Optional[str] = None) -> QueryResult:
        self.ensure_connected()
        start = time.perf_counter()
        try:
            parsed = parse_shell_query(query)
            result = await self._run_shell(self._client[database or DEFAULT_DATABASE], parsed)
        except Exception as e:
            logger.error("Query execution failed: %s", e)
            return QueryResult.failure(str(e), self._elapsed_ms(start))

        if isinstance(result, list):
            rows = [r if isinstance(r, dict) else {"value": r} for r in result]
            row_count = len(rows)
        else:
            rows = [result]
            row_count = _affected(result) if parsed.method in WRITE_METHODS else 1
        keys: List[str] = []
        for row in rows:
            for key in row:
                if key not in keys:
                    keys.append(key)
        fields = [QueryField(name=k, type=" | ".join(sorted({_value_type(r[k]) for r in rows if k in r}))) for k in keys]
        return QueryResult(rows=rows, row_count=row_count, fields=fields, execution_time=self._elapsed_ms(start))
