"""
SQL statements used by the document store
"""

SELECT_DOCUMENT = """
    SELECT data FROM documents
    WHERE collection = ? AND id = ?
"""

SELECT_COLLECTION = """
    SELECT data FROM documents
    WHERE collection = ?
"""

# Appended once per pushed-down equality filter
JSON_FIELD_EQUALS = " AND json_extract(data, ?) = ?"

UPSERT_DOCUMENT = """
    INSERT INTO documents (collection, id, data, created_at, updated_at)
    VALUES (?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
    ON CONFLICT(collection, id) DO UPDATE SET
        data = excluded.data,
        updated_at = CURRENT_TIMESTAMP
"""

DELETE_DOCUMENT = """
    DELETE FROM documents
    WHERE collection = ? AND id = ?
"""

COUNT_COLLECTION = """
    SELECT COUNT(*) AS total FROM documents
    WHERE collection = ?
"""

BEGIN_IMMEDIATE = "BEGIN IMMEDIATE"
