"""
Table catalog for the sharded sysbench-style schema.

Every database holds big tables, small tables and hash-partitioned tables
that share one column layout (id, k, c, pad). Names run sequentially across
the three groups: sbtest1..sbtestN with no gaps.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TableDescriptor:
    """A queryable table and the inclusive domain of its `k` column."""
    name: str
    min_key: int
    max_key: int

    @property
    def key_span(self) -> int:
        return self.max_key - self.min_key + 1


def table_name(index: int) -> str:
    return f"sbtest{index}"


def build_catalog(big_count: int, big_rows: int,
                  small_count: int, small_rows: int,
                  part_count: int, part_rows: int) -> tuple[TableDescriptor, ...]:
    """
    Build the ordered table catalog.

    Args:
        big_count: Number of big tables
        big_rows: Rows per big table
        small_count: Number of small tables
        small_rows: Rows per small table
        part_count: Number of partitioned tables
        part_rows: Total rows per partitioned table (all partitions)

    Returns:
        Tuple of TableDescriptor, big tables first, then small, then partitioned

    Raises:
        ValueError: If a count is negative or a non-empty group has rows < 1
    """
    groups = [
        ('big', big_count, big_rows),
        ('small', small_count, small_rows),
        ('partitioned', part_count, part_rows),
    ]

    tables = []
    index = 1
    for group, count, rows in groups:
        if count < 0:
            raise ValueError(f"{group} table count must be >= 0, got: {count}")
        if count > 0 and rows < 1:
            raise ValueError(f"{group} tables need at least 1 row, got: {rows}")

        for _ in range(count):
            tables.append(TableDescriptor(table_name(index), 1, rows))
            index += 1

    return tuple(tables)
