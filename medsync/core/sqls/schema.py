"""
Database schema definitions
Contains all CREATE TABLE and CREATE INDEX statements
"""

# Every collection lives in one JSON document table
CREATE_DOCUMENTS_TABLE = """
    CREATE TABLE IF NOT EXISTS documents (
        collection TEXT NOT NULL,
        id TEXT NOT NULL,
        data TEXT NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (collection, id)
    )
"""

CREATE_DOCUMENTS_COLLECTION_INDEX = """
    CREATE INDEX IF NOT EXISTS idx_documents_collection
    ON documents(collection)
"""

CREATE_DOCUMENTS_PATIENT_INDEX = """
    CREATE INDEX IF NOT EXISTS idx_documents_patient
    ON documents(collection, json_extract(data, '$.patientId'))
"""

CREATE_DOCUMENTS_COMMAND_INDEX = """
    CREATE INDEX IF NOT EXISTS idx_documents_command
    ON documents(collection, json_extract(data, '$.commandId'))
"""

ALL_TABLES = [
    CREATE_DOCUMENTS_TABLE,
]

ALL_INDEXES = [
    CREATE_DOCUMENTS_COLLECTION_INDEX,
    CREATE_DOCUMENTS_PATIENT_INDEX,
    CREATE_DOCUMENTS_COMMAND_INDEX,
]
