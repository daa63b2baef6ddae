"""Porter - whole-database SQL export with redaction, dump import and S3 bucket cloning."""

__version__ = "0.1.0"

__all__ = [
    "ExportWriter",
    "ImportRunner",
    "BucketReplicator",
    "DatabaseManager",
    "ObjectStore",
    "ChunkedUploadSession",
    "PolicyRegistry",
    "RowTransformer",
    "SQLSerializer",
]
