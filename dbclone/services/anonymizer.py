import hmac
from typing import Any, Callable, Dict, Optional

from faker import Faker
from loguru import logger

from dbclone.errors import ConfigurationError
from dbclone.models.config import (
    ColumnMutation, ColumnMutationOptions, ColumnMutationStrategy, TableAnonymizationOptions,
)


class Anonymizer:
    """
    在传输过程中对行数据应用列脱敏规则

    Args:
        generators: 可选的 ``{fake_method: callable}`` 映射，优先于 Faker 使用
        faker: 其余 fake_method 使用的 Faker 实例
    """

    def __init__(self, generators: Optional[Dict[str, Callable[..., Any]]] = None, faker: Optional[Faker] = None):
        self.generators = dict(generators or {})
        self.faker = faker or Faker()

    def anonymize_row(self, row: Dict[str, Any], options: Optional[TableAnonymizationOptions]) -> Dict[str, Any]:
        if options is None or not options.column_mutations:
            return row
        return self.mutate_row(row, options.column_mutations_map())

    def mutate_row(self, row: Dict[str, Any], mutations: Dict[str, ColumnMutation]) -> Dict[str, Any]:
        mutated = dict(row)
        for column_name, mutation in mutations.items():
            # 行中不存在的列不处理
            if column_name in mutated:
                mutated[column_name] = self.mutate_value(mutated[column_name], mutation)
        return mutated

    def mutate_value(self, value: Any, mutation: ColumnMutation) -> Any:
        strategy = ColumnMutationStrategy(mutation.strategy)
        options = mutation.options
        if strategy == ColumnMutationStrategy.MASK:
            return self.mask(value, options)
        if strategy == ColumnMutationStrategy.STATIC:
            return options.value
        if strategy == ColumnMutationStrategy.FAKE:
            return self.fake(options)
        if strategy == ColumnMutationStrategy.HASH:
            return self.hash(value, options)
        if strategy == ColumnMutationStrategy.NULL:
            return None
        return value

    @staticmethod
    def mask(value: Any, options: ColumnMutationOptions) -> str:
        if value is None:
            return ""
        text = str(value)
        if options.preserve_format and "@" in text:
            local_part, domain = text.split("@", 1)
            return f"{Anonymizer._mask_text(local_part, options)}@{domain}"
        return Anonymizer._mask_text(text, options)

    @staticmethod
    def _mask_text(text: str, options: ColumnMutationOptions) -> str:
        if len(text) <= options.visible_chars:
            return options.mask_char * len(text)
        return text[:options.visible_chars] + options.mask_char * (len(text) - options.visible_chars)

    def fake(self, options: ColumnMutationOptions) -> Any:
        method = options.fake_method
        generator = self.generators.get(method)
        if generator is None:
            generator = getattr(self.faker, method, None)
        if generator is None or not callable(generator):
            raise ConfigurationError(f"Unknown fake method: {method}")
        return generator(*options.fake_arguments)

    @staticmethod
    def hash(value: Any, options: ColumnMutationOptions) -> str:
        if value is None:
            return ""
        try:
            digest = hmac.new(options.salt.encode("utf-8"), str(value).encode("utf-8"), options.algorithm)
        except ValueError as e:
            logger.error(f"Unsupported hash algorithm {options.algorithm}: {str(e)}")
            raise ConfigurationError(f"Unsupported hash algorithm: {options.algorithm}") from e
        return digest.hexdigest()
