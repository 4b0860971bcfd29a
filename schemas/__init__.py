"""
Pydantic schemas for data validation and serialization.

Schemas:
    upstream: Payloads returned by the upstream gallery API
    content: Canonical content stored on local entities
    sync: Sync trigger requests, step summaries and reconciliation reports
    api: Health and statistics responses

Usage:
    from schemas.upstream import UpstreamCase
    from schemas.sync import StepResponse, ReconciliationReport

Validation:
    Upstream schemas only declare the fields the engine stores, so patient
    identifiers in case payloads are dropped at parse time.
"""

__all__ = [
    "SidebarCategory",
    "SidebarProcedure",
    "UpstreamCase",
    "CaseContent",
    "DoctorContent",
    "ProcedureContent",
    "ReconciliationReport",
    "StepResponse",
    "HealthCheckResponse",
    "StatsResponse",
]
