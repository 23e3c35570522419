"""
类型映射 - 原生列类型、归一化值类别、DDL 片段与值转换

两个方向:
    native_to_canonical: information_schema 的 data_type -> CanonicalKind
    canonical_to_ddl: CanonicalKind + 列属性 -> 列定义类型片段

未知类型一律按 text 处理（DDL）或原样透传（值），可用性优先于保真度。
"""

import json
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from pg_mirror.errors import CoercionError
from pg_mirror.models.schema import CanonicalKind, ColumnDescriptor

_INTEGER_TYPES = {"smallint", "integer", "bigint", "int2", "int4", "int8"}
_DECIMAL_TYPES = {"numeric", "decimal", "real", "double precision", "float4", "float8"}
_FLOAT_TYPES = {"real", "double precision", "float4", "float8"}
_TIMESTAMP_TYPES = {
    "timestamp without time zone",
    "timestamp with time zone",
    "timestamp",
    "timestamptz",
    "date",
}
_JSON_TYPES = {"json", "jsonb"}
_CHARACTER_TYPES = {"text", "character varying", "varchar", "character", "char", "bpchar", "name", "citext"}

# 原样保留到 DDL 的类型（值层面透传，交给驱动编码）
_PASSTHROUGH_DDL = {
    "uuid": "uuid",
    "inet": "inet",
    "cidr": "cidr",
    "macaddr": "macaddr",
    "money": "money",
    "interval": "interval",
    "xml": "xml",
    "time without time zone": "time",
    "time with time zone": "timetz",
    "tsvector": "tsvector",
}

# 数组元素 udt 名 -> DDL 类型
_ARRAY_ELEMENT_DDL = {
    "int2": "smallint",
    "int4": "integer",
    "int8": "bigint",
    "text": "text",
    "varchar": "varchar",
    "bpchar": "char",
    "bool": "boolean",
    "float4": "real",
    "float8": "double precision",
    "numeric": "numeric",
    "uuid": "uuid",
    "date": "date",
    "timestamp": "timestamp",
    "timestamptz": "timestamptz",
    "json": "json",
    "jsonb": "jsonb",
    "bytea": "bytea",
}

_TRUE_STRINGS = {"true", "1", "t"}


class TypedValue(BaseModel):
    """
    带类别标记的值

    主库取回的原始值经过类型映射后立即包装成 TypedValue，
    下游只处理已转换的值。
    """
    model_config = ConfigDict(frozen=True)

    kind: CanonicalKind
    value: Any = None

    @property
    def is_null(self) -> bool:
        return self.value is None


def native_to_canonical(
    native_type: Optional[str],
    udt_name: Optional[str] = None,
    is_enum: Optional[bool] = None
) -> CanonicalKind:
    """
    原生类型 -> 值类别

    参数:
        native_type: information_schema.columns.data_type
        udt_name: information_schema.columns.udt_name
        is_enum: USER-DEFINED 类型是否确认为枚举（None 表示未知，按枚举处理）

    返回:
        CanonicalKind，无法识别时为 TEXT
    """
    if not native_type:
        return CanonicalKind.TEXT

    t = native_type.strip().lower()

    if t == "user-defined":
        if is_enum is False:
            return CanonicalKind.TEXT
        return CanonicalKind.ENUM
    if t == "array" or t.endswith("[]"):
        return CanonicalKind.ARRAY
    if t in _INTEGER_TYPES:
        return CanonicalKind.INTEGER
    if t in _DECIMAL_TYPES:
        return CanonicalKind.DECIMAL
    if t in ("boolean", "bool"):
        return CanonicalKind.BOOLEAN
    if t in _TIMESTAMP_TYPES:
        return CanonicalKind.TIMESTAMP
    if t in _JSON_TYPES:
        return CanonicalKind.JSON
    if t == "bytea":
        return CanonicalKind.BINARY
    return CanonicalKind.TEXT


def canonical_to_ddl(kind: CanonicalKind, attributes: Optional[Mapping[str, Any]] = None) -> str:
    """
    值类别 + 列属性 -> 列类型片段

    参数:
        kind: 值类别
        attributes: native_type / max_length / precision / scale / udt_name / enum_available

    返回:
        类型片段，如 "varchar(255)"、"numeric(10,2)"、"timestamptz"

    示例:
        >>> canonical_to_ddl(CanonicalKind.DECIMAL, {"native_type": "numeric", "precision": 10, "scale": 2})
        'numeric(10,2)'
    """
    attrs = dict(attributes or {})
    native = str(attrs.get("native_type") or "").lower()
    udt = str(attrs.get("udt_name") or "").lower()

    if kind == CanonicalKind.INTEGER:
        return native if native in ("smallint", "integer", "bigint") else "bigint"

    if kind == CanonicalKind.DECIMAL:
        if native in ("real", "double precision"):
            return native
        precision, scale = attrs.get("precision"), attrs.get("scale")
        if precision and scale is not None:
            return f"numeric({precision},{scale})"
        return "numeric"

    if kind == CanonicalKind.BOOLEAN:
        return "boolean"

    if kind == CanonicalKind.TIMESTAMP:
        if native == "date":
            return "date"
        if native in ("timestamp with time zone", "timestamptz"):
            return "timestamptz"
        return "timestamp"

    if kind == CanonicalKind.JSON:
        return "json" if native == "json" or udt == "json" else "jsonb"

    if kind == CanonicalKind.BINARY:
        return "bytea"

    if kind == CanonicalKind.ENUM:
        # 目标库没有该枚举类型时退化为 text
        if attrs.get("enum_available") and attrs.get("udt_name"):
            return quote_type_name(str(attrs["udt_name"]))
        return "text"

    if kind == CanonicalKind.ARRAY:
        if udt.startswith("_"):
            return f"{_ARRAY_ELEMENT_DDL.get(udt[1:], 'text')}[]"
        return "text[]"

    # TEXT 以及所有未知类型
    max_length = attrs.get("max_length")
    if native == "character varying":
        return f"varchar({max_length})" if max_length else "varchar"
    if native == "character":
        return f"char({max_length})" if max_length else "char"
    if native in _PASSTHROUGH_DDL:
        return _PASSTHROUGH_DDL[native]
    return "text"


def column_ddl_type(column: ColumnDescriptor, enum_available: bool = False) -> str:
    """列描述 -> 类型片段"""
    attrs = column.attributes()
    attrs["enum_available"] = enum_available
    return canonical_to_ddl(column.canonical_kind, attrs)


def quote_type_name(name: str) -> str:
    """引用类型名（保留 schema 前缀以外的大小写）"""
    return '"' + name.replace('"', '""') + '"'


# ============================================================================
# 值转换
# ============================================================================

CoerceFunc = Callable[[Any, str, Optional[str]], Any]


def _coerce_integer(value: Any, native: str, column: Optional[str]) -> Any:
    """整数：宽松解析数字样式的字符串"""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = Decimal(text)
        except InvalidOperation:
            raise CoercionError(column, CanonicalKind.INTEGER.value, value)
        if not number.is_finite():
            raise CoercionError(column, CanonicalKind.INTEGER.value, value)
        return int(number)
    raise CoercionError(column, CanonicalKind.INTEGER.value, value)


def _coerce_decimal(value: Any, native: str, column: Optional[str]) -> Any:
    """小数：numeric 用 Decimal，real/double 用 float"""
    as_float = native in _FLOAT_TYPES
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return float(text) if as_float else Decimal(text)
        except (ValueError, InvalidOperation):
            raise CoercionError(column, CanonicalKind.DECIMAL.value, value)
    if isinstance(value, (int, float, Decimal)):
        return float(value) if as_float else Decimal(str(value))
    return value


def _coerce_boolean(value: Any, native: str, column: Optional[str]) -> Any:
    """布尔：字符串 true/1/t（不区分大小写）为真"""
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _parse_iso(text: str) -> datetime:
    cleaned = text.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    return datetime.fromisoformat(cleaned)


def _coerce_timestamp(value: Any, native: str, column: Optional[str]) -> Any:
    """时间戳：解析 ISO-8601 字符串，datetime/date 原样透传"""
    is_date = native == "date"
    if isinstance(value, datetime):
        return value.date() if is_date else value
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            parsed = _parse_iso(value)
        except ValueError:
            raise CoercionError(column, CanonicalKind.TIMESTAMP.value, value)
        return parsed.date() if is_date else parsed
    return value


def _coerce_json(value: Any, native: str, column: Optional[str]) -> Any:
    """JSON：合法的 JSON 字符串原样保留，避免二次转义"""
    if isinstance(value, str):
        try:
            json.loads(value)
            return value
        except ValueError:
            return json.dumps(value)
    return json.dumps(value, default=str)


def _coerce_text(value: Any, native: str, column: Optional[str]) -> Any:
    """文本：字符类型转字符串，其他类型（uuid、inet、time ...）透传给驱动"""
    if native in _CHARACTER_TYPES:
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return str(value)
    return value


def _coerce_enum(value: Any, native: str, column: Optional[str]) -> Any:
    return str(value)


def _coerce_array(value: Any, native: str, column: Optional[str]) -> Any:
    return value


def _coerce_binary(value: Any, native: str, column: Optional[str]) -> Any:
    """二进制：bytes 透传，\\x 十六进制字符串解码"""
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        if value.startswith("\\x"):
            try:
                return bytes.fromhex(value[2:])
            except ValueError:
                raise CoercionError(column, CanonicalKind.BINARY.value, value)
        return value.encode("utf-8")
    return value


# 转换器注册表
COERCER_REGISTRY: Dict[CanonicalKind, CoerceFunc] = {
    CanonicalKind.INTEGER: _coerce_integer,
    CanonicalKind.DECIMAL: _coerce_decimal,
    CanonicalKind.BOOLEAN: _coerce_boolean,
    CanonicalKind.TIMESTAMP: _coerce_timestamp,
    CanonicalKind.TEXT: _coerce_text,
    CanonicalKind.JSON: _coerce_json,
    CanonicalKind.ENUM: _coerce_enum,
    CanonicalKind.ARRAY: _coerce_array,
    CanonicalKind.BINARY: _coerce_binary,
}


def coerce_value(
    value: Any,
    kind: CanonicalKind,
    native_type: Optional[str] = None,
    column: Optional[str] = None
) -> TypedValue:
    """
    将原始值转换为目标列可接受的值

    参数:
        value: 原始值
        kind: 目标列的值类别
        native_type: 目标列原生类型（区分 date/timestamp、numeric/real 等）
        column: 列名，仅用于错误信息

    返回:
        TypedValue

    异常:
        CoercionError: 值无法转换（由调用方按行隔离）

    示例:
        >>> coerce_value("42", CanonicalKind.INTEGER).value
        42
        >>> coerce_value("T", CanonicalKind.BOOLEAN).value
        True
        >>> coerce_value(None, CanonicalKind.JSON).value is None
        True
    """
    if value is None:
        return TypedValue(kind=kind, value=None)

    native = (native_type or "").lower()
    coercer = COERCER_REGISTRY.get(kind, _coerce_array)
    return TypedValue(kind=kind, value=coercer(value, native, column))


def coerce_for_column(value: Any, column: ColumnDescriptor) -> TypedValue:
    """按列描述转换"""
    return coerce_value(value, column.canonical_kind, column.native_type, column.name)
