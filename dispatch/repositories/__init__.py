from dispatch.repositories.assignments import InMemoryAssignmentsRepository, PostgresAssignmentsRepository
from dispatch.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from dispatch.repositories.jobs import InMemoryJobsRepository, PostgresJobsRepository
from dispatch.repositories.recommendations import (
    InMemoryRecommendationsRepository,
    PostgresRecommendationsRepository,
)
from dispatch.repositories.vendors import InMemoryVendorsRepository, PostgresVendorsRepository

__all__ = [
    "InMemoryAssignmentsRepository",
    "PostgresAssignmentsRepository",
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
    "InMemoryJobsRepository",
    "PostgresJobsRepository",
    "InMemoryRecommendationsRepository",
    "PostgresRecommendationsRepository",
    "InMemoryVendorsRepository",
    "PostgresVendorsRepository",
]
