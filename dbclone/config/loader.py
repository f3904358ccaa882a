import json
import os
from typing import Any, Dict

from loguru import logger

from dbclone.errors import ConfigurationError
from dbclone.models.config import (
    ColumnMutation,
    ColumnMutationOptions,
    ColumnMutationStrategy,
    ConnectionDescriptor,
    RowSelection,
    RowSelectionStrategy,
    SyncConfig,
    SynchronizationOptions,
    SynchronizeTableSchema,
    TableAnonymizationOptions,
)

AUDIT_SECRET_ENV = "AUDIT_SECRET"

TUNING_FIELDS = ["max_concurrent_tasks", "retry_times", "retry_interval", "job_backoff", "job_timeout"]

TRUE_STRINGS = {"1", "true", "yes", "on"}
FALSE_STRINGS = {"0", "false", "no", "off", ""}


def parse_bool(value: Any) -> bool:
    """解析布尔值，支持 JSON 布尔、0/1 以及 true/false 等字符串"""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
        raise ValueError(f"not a boolean: {value!r}")
    return bool(value)


def parse_connection(data: Dict[str, Any]) -> ConnectionDescriptor:
    known = {"name", "driver", "type", "database", "host", "port", "username", "user", "password"}
    driver = data.get("driver", data.get("type"))
    if driver is None:
        raise KeyError("driver")
    port = data.get("port")
    return ConnectionDescriptor(
        name=data["name"],
        driver=driver,
        database=data["database"],
        host=data.get("host"),
        port=int(port) if port is not None else None,
        username=data.get("username", data.get("user")),
        password=data.get("password"),
        extra_params={key: value for key, value in data.items() if key not in known},
    )


def parse_column_mutation(column_name: str, data: Dict[str, Any]) -> ColumnMutation:
    option_fields = ColumnMutationOptions.__dataclass_fields__
    options = {key: value for key, value in data.get("options", {}).items() if key in option_fields}
    return ColumnMutation(
        column_name=column_name,
        strategy=ColumnMutationStrategy(data["strategy"]),
        options=ColumnMutationOptions(**options),
    )


def parse_table_options(data: Dict[str, Any]) -> TableAnonymizationOptions:
    mutations = [
        parse_column_mutation(column_name, mutation)
        for column_name, mutation in data.get("column_mutations", {}).items()
    ]
    row_selection = None
    if data.get("row_selection"):
        selection = data["row_selection"]
        row_selection = RowSelection(
            strategy=RowSelectionStrategy(selection.get("strategy", RowSelectionStrategy.FULL_TABLE.value)),
            limit=int(selection.get("limit", 1000)),
            sort_column=selection.get("sort_column"),
        )
    return TableAnonymizationOptions(
        column_mutations=mutations,
        row_selection=row_selection,
        enforce_column_types=parse_bool(data.get("enforce_column_types", False)),
    )


def parse_options(data: Dict[str, Any]) -> SynchronizationOptions:
    kwargs: Dict[str, Any] = {
        "table_anonymization_options": {
            table: parse_table_options(options)
            for table, options in data.get("table_anonymization_options", {}).items()
        }
    }
    if "synchronize_table_schema" in data:
        kwargs["synchronize_table_schema"] = SynchronizeTableSchema(data["synchronize_table_schema"])
    for field in ("disable_foreign_key_constraints", "keep_unknown_tables_on_target"):
        if field in data:
            kwargs[field] = parse_bool(data[field])
    if "migration_table_name" in data:
        kwargs["migration_table_name"] = data["migration_table_name"]
    if "chunk_size" in data:
        kwargs["chunk_size"] = int(data["chunk_size"])
    return SynchronizationOptions(**kwargs)


def parse_config(data: Dict[str, Any]) -> SyncConfig:
    """
    根据已解析的 JSON 构建 SyncConfig

    Raises:
        ConfigurationError: 缺少必填字段或取值无效
    """
    try:
        targets = data["targets"] if "targets" in data else [data["target"]]
        if not targets:
            raise ConfigurationError("At least one target connection is required")

        config_kwargs: Dict[str, Any] = {
            "source": parse_connection(data["source"]),
            "targets": [parse_connection(target) for target in targets],
            "options": parse_options(data.get("options", {})),
        }

        for field in TUNING_FIELDS:
            if field in data:
                config_kwargs[field] = data[field]
                logger.debug(f"Using {field} from config file: {data[field]}")
            else:
                logger.debug(f"Using default {field}")

        config_kwargs["audit_secret"] = data.get("audit_secret") or os.environ.get(AUDIT_SECRET_ENV, "")
        return SyncConfig(**config_kwargs)
    except ConfigurationError:
        raise
    except KeyError as e:
        raise ConfigurationError(f"Config is missing required field: {str(e)}")
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Config contains an invalid value: {str(e)}")


def load_config(config_path: str) -> SyncConfig:
    """
    从 JSON 文件加载配置

    Args:
        config_path: 配置文件路径

    Returns:
        SyncConfig

    Raises:
        FileNotFoundError: 配置文件不存在
        ConfigurationError: JSON 格式错误、缺少字段或取值无效
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Config file not found: {config_path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file is not valid JSON: {str(e)}")

    config = parse_config(data)
    logger.debug(
        f"Loaded config: source={config.source.name}, targets={[target.name for target in config.targets]}, "
        f"max_concurrent_tasks={config.max_concurrent_tasks}"
    )
    return config
