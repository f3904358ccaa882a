from collections import deque
from typing import Dict, List, Set

from loguru import logger

from dbclone.errors import DependencyCycleError
from dbclone.models.schema import DatabaseSchema


def build_dependency_graph(schema: DatabaseSchema, tables: List[str] = None) -> Dict[str, Set[str]]:
    """
    获取每个表通过外键引用的表

    忽略自引用以及对 ``tables`` 之外的表的引用
    """
    names = list(tables) if tables is not None else schema.table_names
    wanted = set(names)
    graph: Dict[str, Set[str]] = {}
    for name in names:
        table = schema.get_table(name)
        references = set()
        if table is not None:
            for foreign_key in table.foreign_keys:
                if foreign_key.referenced_table in wanted and foreign_key.referenced_table != name:
                    references.add(foreign_key.referenced_table)
        graph[name] = references
    return graph


def topological_sort(graph: Dict[str, Set[str]]) -> List[str]:
    """Kahn 拓扑排序，父表在前，同级按表名排序"""
    in_degree = {table: len(dependencies) for table, dependencies in graph.items()}
    dependents: Dict[str, List[str]] = {table: [] for table in graph}
    for table, dependencies in graph.items():
        for dependency in dependencies:
            dependents[dependency].append(table)

    queue = deque(sorted(table for table, degree in in_degree.items() if degree == 0))
    order = []
    while queue:
        table = queue.popleft()
        order.append(table)
        for dependent in sorted(dependents[table]):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(graph):
        remaining = sorted(set(graph) - set(order))
        raise DependencyCycleError(f"Circular foreign key dependency between: {', '.join(remaining)}", remaining)
    return order


def get_processing_order(schema: DatabaseSchema, tables: List[str] = None) -> Dict[str, List[str]]:
    """插入顺序（父表在前）和删除顺序（子表在前）"""
    insert_order = topological_sort(build_dependency_graph(schema, tables))
    logger.debug(f"Dependency resolution completed: {insert_order}")
    return {"insert_order": insert_order, "delete_order": list(reversed(insert_order))}
