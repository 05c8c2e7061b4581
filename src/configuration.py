import logging
import re

from keboola.component.exceptions import UserException
from pydantic import BaseModel, Field, ValidationError, field_validator

DEFAULT_LOGIN_URL = "https://login.salesforce.com"


class BulkQuery(BaseModel):
    """Bulk API 2.0 query configuration"""

    name: str = Field(..., description="Query name (used for output table name)")
    soql: str = Field(..., description="SOQL query text")
    include_archived: bool = Field(default=False, description="Include deleted and archived records (queryAll)")
    incremental: bool = Field(default=False, description="Load the output table incrementally")

    @field_validator("name")
    def validate_name(cls, v):
        if not v or len(v.strip()) == 0:
            raise UserException("Query name cannot be empty")
        sanitized = v.strip().lower().replace(" ", "_").replace("-", "_")
        return sanitized

    @field_validator("soql")
    def validate_soql(cls, v):
        if not v or len(v.strip()) == 0:
            raise UserException("SOQL query cannot be empty")
        return v.strip()


class Configuration(BaseModel):
    login_url: str = Field(default=DEFAULT_LOGIN_URL, description="Salesforce login URL")
    api_version: str = Field(default="58.0", description="Salesforce API version")
    username: str = Field(..., description="Salesforce username")
    password: str = Field(alias="#password", description="Salesforce password")
    security_token: str = Field(default="", alias="#security_token", description="Salesforce security token")
    client_id: str = Field(..., description="Connected app consumer key")
    client_secret: str = Field(alias="#client_secret", description="Connected app consumer secret")
    queries: list[BulkQuery] = Field(..., description="Bulk queries to run")
    page_size: int | None = Field(default=None, ge=1, description="Maximum number of records per results page")
    poll_interval: float = Field(default=10.0, gt=0, description="Seconds between job status polls")
    max_wait: float | None = Field(default=7200, gt=0, description="Maximum seconds to wait for a job")
    debug: bool = Field(default=False, description="Enable debug mode")

    def __init__(self, **data):
        try:
            super().__init__(**data)
        except ValidationError as e:
            error_messages = [f"{err['loc'][0]}: {err['msg']}" for err in e.errors()]
            raise UserException(f"Validation Error: {', '.join(error_messages)}")

        if self.debug:
            logging.debug("Component will run in Debug mode")

    @field_validator("username", "password", "client_id", "client_secret")
    def validate_required(cls, v, info):
        if not v or len(v.strip()) == 0:
            raise UserException(f"{info.field_name} cannot be empty")
        return v.strip()

    @field_validator("security_token")
    def validate_security_token(cls, v):
        return v.strip()

    @field_validator("api_version")
    def validate_api_version(cls, v):
        version = v.strip().lstrip("vV")
        if not re.fullmatch(r"\d+\.\d+", version):
            raise UserException(f"Invalid API version: {v}")
        return version

    @field_validator("login_url")
    def validate_login_url(cls, v):
        url = v.strip().rstrip("/")
        if not url.startswith("https://"):
            raise UserException("Login URL must start with https://")
        return url

    @field_validator("queries")
    def validate_queries(cls, v):
        if not v:
            raise UserException("At least one query must be configured")
        names = [q.name for q in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise UserException(f"Duplicate query names: {', '.join(duplicates)}")
        return v
