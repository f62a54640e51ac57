# schema.py is just SQL wrapped in Python

from __future__ import annotations

from psycopg import AsyncConnection, sql

# runs CREATE EXTENSION / TABLE / INDEX IF NOT EXISTS for one vector collection
# IF NOT EXISTS ensures repeated calls are safe

# one table per collection; one row per chunk. metadata lives in typed columns
# (tenant_id, material_id, chunk_type, ...) rather than a JSON blob so the
# equality filters used by every query hit plain btree indexes

# the dimension is formatted into the DDL with sql.Literal - it is an integer
# from config, and identifiers go through sql.Identifier, never str formatting

# HNSW index is for the vector similarity search - graph based data structure
# to allow pgvector to find nearest embedding vectors under cosine distance


async def init_collection(conn: AsyncConnection, table: str, dimension: int) -> None:
    ident = sql.Identifier(table)
    async with conn.cursor() as cur:
        await cur.execute("CREATE EXTENSION IF NOT EXISTS vector;")

        await cur.execute(
            sql.SQL(
                """
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL CHECK (tenant_id <> ''),
                    material_id TEXT NOT NULL CHECK (material_id <> ''),
                    content TEXT NOT NULL,
                    chunk_type TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    page_number INTEGER NULL,
                    section_title TEXT NULL,
                    token_count INTEGER NOT NULL,
                    char_count INTEGER NOT NULL,
                    embedding VECTOR({dimension}) NOT NULL,
                    upserted_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                );
                """
            ).format(table=ident, dimension=sql.Literal(int(dimension)))
        )

        await cur.execute(
            sql.SQL(
                "CREATE INDEX IF NOT EXISTS {name} ON {table} (material_id);"
            ).format(name=sql.Identifier(f"{table}_material_id_idx"), table=ident)
        )

        await cur.execute(
            sql.SQL(
                "CREATE INDEX IF NOT EXISTS {name} ON {table} (tenant_id, material_id);"
            ).format(name=sql.Identifier(f"{table}_tenant_material_idx"), table=ident)
        )

        await cur.execute(
            sql.SQL(
                """
                CREATE INDEX IF NOT EXISTS {name}
                ON {table} USING hnsw (embedding vector_cosine_ops);
                """
            ).format(name=sql.Identifier(f"{table}_embedding_hnsw_idx"), table=ident)
        )


# dimension lives in the column's type modifier: VECTOR(1536) -> atttypmod 1536
async def describe_collection(conn: AsyncConnection, table: str) -> tuple[int, str] | None:
    """Return (dimension, metric) for an existing collection, None if absent."""
    async with conn.cursor() as cur:
        await cur.execute("SELECT to_regclass(%s) IS NOT NULL", (table,))
        row = await cur.fetchone()
        if not row or not row[0]:
            return None

        await cur.execute(
            """
            SELECT a.atttypmod
            FROM pg_attribute a
            WHERE a.attrelid = to_regclass(%s)
              AND a.attname = 'embedding'
              AND NOT a.attisdropped
            """,
            (table,),
        )
        row = await cur.fetchone()
        dimension = int(row[0]) if row and row[0] is not None else -1

        await cur.execute(
            """
            SELECT indexdef
            FROM pg_indexes
            WHERE tablename = %s
              AND indexdef ILIKE '%%USING hnsw%%'
            """,
            (table,),
        )
        rows = await cur.fetchall()

    metric = "unknown"
    for (indexdef,) in rows:
        if "vector_cosine_ops" in indexdef:
            metric = "cosine"
            break
        if "vector_l2_ops" in indexdef:
            metric = "euclidean"
        elif "vector_ip_ops" in indexdef:
            metric = "dotproduct"
    return dimension, metric
