"""
Centralized database schema definitions for the py-load-census package.

Column types may reference `{schema}`, which is replaced by the quoted schema
the adapter is configured with when the DDL is built. Tables are created in
the order listed.
"""

VARIABLES_DEDUP_CONSTRAINT = "variables_dedup_key"
API_PATHS_DEDUP_CONSTRAINT = "api_paths_vintage_dataset_key"

# IMMUTABLE wrappers so the digests can back generated columns and a UNIQUE
# constraint. They must match py_load_census.hashing.
IMMUTABLE_FUNCTIONS = {
    "immutable_md5": {
        "arguments": "input TEXT",
        "returns": "TEXT",
        "body": """
BEGIN
    RETURN md5(COALESCE(input, ''));
END;
""",
    },
    "immutable_array_digest": {
        "arguments": "input TEXT[]",
        "returns": "TEXT",
        "body": """
DECLARE
    encoded TEXT := '';
    element TEXT;
BEGIN
    IF input IS NOT NULL THEN
        FOREACH element IN ARRAY input LOOP
            element := COALESCE(element, '');
            encoded := encoded || length(element)::TEXT || ':' || element;
        END LOOP;
    END IF;
    RETURN md5(encoded);
END;
""",
    },
}

METADATA_SCHEMA = {
    "functions": IMMUTABLE_FUNCTIONS,
    "tables": {
        # No uniqueness beyond the primary key: geography rows belong to the
        # endpoint that inserted them.
        "geography": {
            "columns": {
                "id": "SERIAL",
                "name": "TEXT NOT NULL CHECK (name <> '')",
                "geo_level_display": "TEXT",
                "reference_date": "DATE",
                "requires": "TEXT[]",
                "wildcard": "TEXT[] DEFAULT NULL",
                "limit": "INTEGER",
                "geo_level_id": "TEXT",
                "optional_with_wildcard_for": "TEXT",
            },
            "primary_key": "id",
        },
        "variables": {
            "columns": {
                "id": "SERIAL",
                "name": "TEXT NOT NULL CHECK (name <> '')",
                "label": "TEXT[] NOT NULL",
                "concept": "TEXT",
                "required": "TEXT",
                "predicate_type": "TEXT",
                "group": "TEXT[]",
                "limit": "INTEGER",
                "predicate_only": "BOOLEAN",
                "attributes": "TEXT[]",
                # PostgreSQL arrays are 1-indexed.
                "_first_group": "TEXT GENERATED ALWAYS AS (COALESCE(\"group\"[1], '')) STORED",
                "_concept_hash": "TEXT GENERATED ALWAYS AS ({schema}.immutable_md5(concept)) STORED",
                "_attributes_hash": (
                    "TEXT GENERATED ALWAYS AS ({schema}.immutable_array_digest(attributes)) STORED"
                ),
            },
            "primary_key": "id",
            "unique": {
                VARIABLES_DEDUP_CONSTRAINT: ["name", "_attributes_hash", "_concept_hash", "_first_group"],
            },
        },
        "api_paths": {
            "columns": {
                "id": "SERIAL",
                "c_vintage": "INTEGER",
                "c_dataset": "TEXT[] NOT NULL DEFAULT ARRAY[]::TEXT[]",
                "c_geography_link": "TEXT NOT NULL",
                "c_variables_link": "TEXT NOT NULL",
                "title": "TEXT NOT NULL",
                "description": "TEXT NOT NULL",
            },
            "primary_key": "id",
            # Timeseries endpoints have no vintage; two of them with the same
            # dataset path are still the same endpoint.
            "unique": {
                API_PATHS_DEDUP_CONSTRAINT: ["c_vintage", "c_dataset"],
            },
            "nulls_not_distinct": True,
        },
        "api_paths_variables_association": {
            "columns": {
                "id": "SERIAL",
                "api_paths_id": "INTEGER NOT NULL REFERENCES {schema}.api_paths (id)",
                "variables_id": "INTEGER NOT NULL REFERENCES {schema}.variables (id)",
            },
            "primary_key": "id",
            "unique": {
                "api_paths_variables_association_key": ["api_paths_id", "variables_id"],
            },
        },
        "api_paths_geography_association": {
            "columns": {
                "id": "SERIAL",
                "api_paths_id": "INTEGER NOT NULL REFERENCES {schema}.api_paths (id)",
                "geography_id": "INTEGER NOT NULL REFERENCES {schema}.geography (id)",
            },
            "primary_key": "id",
            "unique": {
                "api_paths_geography_association_key": ["api_paths_id", "geography_id"],
            },
        },
    },
}

# Per-endpoint bookkeeping for the `status` command.
INGESTION_STATE_SCHEMA = {
    "tables": {
        "ingestion_state": {
            "columns": {
                "endpoint": "TEXT NOT NULL",
                "api_paths_id": "INTEGER",
                "last_run_ts_utc": "TIMESTAMPTZ",
                "last_successful_run_ts_utc": "TIMESTAMPTZ",
                "status": "VARCHAR(50)",
                "variables_count": "INTEGER",
                "geography_count": "INTEGER",
                "last_error": "TEXT",
                "pipeline_version": "VARCHAR(50)",
            },
            "primary_key": "endpoint",
        }
    },
}
