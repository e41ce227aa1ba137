"""journal_shared — Shared utilities for the journal Lambda functions.

Provides:
    - Environment-backed configuration (JournalConfig)
    - Caller identity from the API Gateway Cognito authorizer
    - DynamoDB / S3 client singletons
    - HTTP response helpers with CORS
    - DynamoDB serialization/deserialization
    - Entry validation, access checks and persistence
    - Listing/search query construction and continuation tokens
"""

__version__ = "1.0.0"
