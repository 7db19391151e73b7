"""DuckDB schema for the helpdesk store.

Tables:
    users, chats, messages                 - 1:1 support chats
    group_chats, group_members,
    group_messages                         - agent groups
    agent_dm_messages                      - agent direct messages, keyed by
                                             the ordered pair (agent_a < agent_b)
    global_messages                        - team-wide chat
    user_dm_reads, user_group_reads,
    user_global_reads                      - per-user read watermarks

Secondary indexes are only placed on columns that are never updated.
"""
import duckdb

_SEQUENCES = (
    "users_seq",
    "chats_seq",
    "messages_seq",
    "group_chats_seq",
    "group_messages_seq",
    "agent_dm_messages_seq",
    "global_messages_seq",
)

_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER DEFAULT nextval('users_seq') PRIMARY KEY,
        name VARCHAR NOT NULL,
        email VARCHAR,
        role VARCHAR NOT NULL,
        whatsapp_id VARCHAR,
        is_online BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id INTEGER DEFAULT nextval('chats_seq') PRIMARY KEY,
        client_id INTEGER NOT NULL,
        agent_id INTEGER,
        status VARCHAR NOT NULL,
        channel VARCHAR NOT NULL DEFAULT 'web',
        subject VARCHAR,
        created_at TIMESTAMP NOT NULL,
        assigned_at TIMESTAMP,
        closed_at TIMESTAMP,
        first_response_at TIMESTAMP,
        updated_at TIMESTAMP,
        rating INTEGER,
        feedback VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER DEFAULT nextval('messages_seq') PRIMARY KEY,
        chat_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        content VARCHAR NOT NULL,
        reply_to_id INTEGER,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        status VARCHAR NOT NULL DEFAULT 'sent',
        channel VARCHAR NOT NULL DEFAULT 'web',
        external_message_id VARCHAR,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_chats (
        id INTEGER DEFAULT nextval('group_chats_seq') PRIMARY KEY,
        name VARCHAR NOT NULL,
        created_by INTEGER NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_members (
        group_id INTEGER NOT NULL REFERENCES group_chats(id),
        user_id INTEGER NOT NULL,
        added_by INTEGER,
        added_at TIMESTAMP NOT NULL,
        PRIMARY KEY (group_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_messages (
        id INTEGER DEFAULT nextval('group_messages_seq') PRIMARY KEY,
        group_id INTEGER NOT NULL REFERENCES group_chats(id),
        user_id INTEGER NOT NULL,
        content VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_dm_messages (
        id INTEGER DEFAULT nextval('agent_dm_messages_seq') PRIMARY KEY,
        agent_a INTEGER NOT NULL,
        agent_b INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        content VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS global_messages (
        id INTEGER DEFAULT nextval('global_messages_seq') PRIMARY KEY,
        user_id INTEGER NOT NULL,
        content VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_dm_reads (
        user_id INTEGER NOT NULL,
        agent_a INTEGER NOT NULL,
        agent_b INTEGER NOT NULL,
        last_read_at TIMESTAMP NOT NULL,
        PRIMARY KEY (user_id, agent_a, agent_b)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_group_reads (
        user_id INTEGER NOT NULL,
        group_id INTEGER NOT NULL,
        last_read_at TIMESTAMP NOT NULL,
        PRIMARY KEY (user_id, group_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_global_reads (
        user_id INTEGER PRIMARY KEY,
        last_read_at TIMESTAMP NOT NULL
    )
    """,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_chats_client_id ON chats(client_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_chat_id ON messages(chat_id)",
    "CREATE INDEX IF NOT EXISTS idx_group_messages_group_id ON group_messages(group_id)",
    "CREATE INDEX IF NOT EXISTS idx_agent_dm_pair ON agent_dm_messages(agent_a, agent_b)",
)


def ensure_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create sequences, tables and indexes. Safe to call repeatedly."""
    for sequence in _SEQUENCES:
        conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {sequence} START 1")
    for ddl in _TABLES:
        conn.execute(ddl)
    for ddl in _INDEXES:
        conn.execute(ddl)
