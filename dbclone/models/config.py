from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum

from dbclone.errors import ConfigurationError


class DriverKind(str, Enum):
    MYSQL = "mysql"
    MARIADB = "mariadb"
    POSTGRES = "postgres"
    SQLSERVER = "sqlserver"
    SQLITE = "sqlite"

    @classmethod
    def parse(cls, value: Any) -> "DriverKind":
        if isinstance(value, cls):
            return value
        aliases = {
            "postgresql": cls.POSTGRES,
            "pgsql": cls.POSTGRES,
            "mssql": cls.SQLSERVER,
            "sqlsrv": cls.SQLSERVER,
        }
        key = str(value).lower()
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            raise ConfigurationError(f"Unsupported database type: {value}")


class SynchronizeTableSchema(str, Enum):
    NONE = "none"
    TRUNCATE = "truncate"
    DROP_CREATE = "drop_create"


class ColumnMutationStrategy(str, Enum):
    MASK = "mask"
    STATIC = "static"
    FAKE = "fake"
    HASH = "hash"
    KEEP = "keep"
    NULL = "null"


class RowSelectionStrategy(str, Enum):
    FULL_TABLE = "full_table"
    FIRST_X = "first_x"
    LAST_X = "last_x"


@dataclass(frozen=True)
class ConnectionDescriptor:
    """数据库连接配置，运行开始后不再修改"""
    name: str
    driver: DriverKind
    database: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    extra_params: Dict[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "driver", DriverKind.parse(self.driver))

    def connection_name(self, run_id: str) -> str:
        """连接池中的键，每次运行唯一"""
        return f"{run_id}_{self.name}_{self.driver.value}"

    def param(self, key: str, default: Any = None) -> Any:
        return self.extra_params.get(key, default)

    def __repr__(self) -> str:
        return (
            f"ConnectionDescriptor(name={self.name!r}, driver={self.driver.value!r}, "
            f"host={self.host!r}, port={self.port!r}, database={self.database!r})"
        )


@dataclass(frozen=True)
class ColumnMutationOptions:
    # 伪造数据
    fake_method: str = "word"
    fake_arguments: List[Any] = field(default_factory=list)
    # 掩码
    visible_chars: int = 2
    mask_char: str = "*"
    preserve_format: bool = False
    # 哈希
    algorithm: str = "sha256"
    salt: str = ""
    # 固定值
    value: Any = None


@dataclass(frozen=True)
class ColumnMutation:
    column_name: str
    strategy: ColumnMutationStrategy
    options: ColumnMutationOptions = field(default_factory=ColumnMutationOptions)


@dataclass(frozen=True)
class RowSelection:
    strategy: RowSelectionStrategy = RowSelectionStrategy.FULL_TABLE
    limit: int = 1000
    sort_column: Optional[str] = None

    @property
    def is_limited(self) -> bool:
        return self.strategy != RowSelectionStrategy.FULL_TABLE


@dataclass(frozen=True)
class TableAnonymizationOptions:
    column_mutations: List[ColumnMutation] = field(default_factory=list)
    row_selection: Optional[RowSelection] = None
    enforce_column_types: bool = False

    def column_mutations_map(self) -> Dict[str, ColumnMutation]:
        return {mutation.column_name: mutation for mutation in self.column_mutations}


@dataclass(frozen=True)
class SynchronizationOptions:
    table_anonymization_options: Dict[str, TableAnonymizationOptions] = field(default_factory=dict)
    disable_foreign_key_constraints: bool = True
    synchronize_table_schema: SynchronizeTableSchema = SynchronizeTableSchema.DROP_CREATE
    keep_unknown_tables_on_target: bool = True
    migration_table_name: Optional[str] = None
    chunk_size: int = 1000

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ConfigurationError(f"chunk_size must be positive, got {self.chunk_size}")

    def anonymization_options_for(self, table_name: str) -> Optional[TableAnonymizationOptions]:
        return self.table_anonymization_options.get(table_name)

    def enforce_column_types_map(self) -> Dict[str, bool]:
        return {
            table: True
            for table, options in self.table_anonymization_options.items()
            if options.enforce_column_types
        }


@dataclass
class SyncConfig:
    source: ConnectionDescriptor
    targets: List[ConnectionDescriptor]
    options: SynchronizationOptions = field(default_factory=SynchronizationOptions)
    max_concurrent_tasks: int = 5
    retry_times: int = 3
    retry_interval: int = 2
    job_backoff: int = 30
    job_timeout: int = 3600
    audit_secret: str = ""
