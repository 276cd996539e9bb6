"""Pydantic schemas validating operator input before it reaches the core."""

from typing import Any, TypeVar

from pydantic import BaseModel, Field, IPvAnyAddress, SecretStr, ValidationError, field_validator

from ca_manager.domain.models import DistinguishedName, SubjectRequest
from ca_manager.errors import InvalidInputError
from ca_manager.store.pki_store import canonicalize_domain
from shared.config import settings

M = TypeVar("M", bound=BaseModel)


def _validate_domain(value: str) -> str:
    try:
        return canonicalize_domain(value)
    except InvalidInputError as e:
        raise ValueError(str(e)) from e


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class RootCAParams(BaseModel):
    """Fields for initializing the root CA."""

    model_config = {"str_strip_whitespace": True}

    country_code: str = Field(..., pattern=r"^[A-Za-z]{2}$")
    state: str = Field(..., min_length=1, max_length=128)
    city: str = Field(..., min_length=1, max_length=128)
    organization: str = Field(..., min_length=1, max_length=64)
    common_name: str = Field(..., min_length=1, max_length=64)
    validity_days: int = Field(settings.ROOT_VALIDITY_DAYS, gt=0)

    @field_validator("country_code")
    @classmethod
    def upper_country(cls, value: str) -> str:
        return value.upper()

    def to_distinguished_name(self) -> DistinguishedName:
        return DistinguishedName(
            country=self.country_code,
            state=self.state,
            locality=self.city,
            organization=self.organization,
            common_name=self.common_name,
        )


class CertificateParams(BaseModel):
    """Fields for issuing a leaf certificate."""

    model_config = {"str_strip_whitespace": True}

    domain_name: str = Field(..., min_length=1)
    ip_address: IPvAnyAddress | None = None
    validity_days: int = Field(settings.LEAF_VALIDITY_DAYS, gt=0)
    pkcs12_password: SecretStr | None = None

    check_domain = field_validator("domain_name")(_validate_domain)
    blank_optional = field_validator("ip_address", "pkcs12_password", mode="before")(_blank_to_none)

    def to_subject_request(self) -> SubjectRequest:
        return SubjectRequest(
            domain_name=self.domain_name,
            ip_address=self.ip_address,
            validity_days=self.validity_days,
        )

    @property
    def password(self) -> str | None:
        return self.pkcs12_password.get_secret_value() if self.pkcs12_password else None


class RenewalParams(BaseModel):
    """Fields for reissuing an existing certificate."""

    model_config = {"str_strip_whitespace": True}

    domain_name: str = Field(..., min_length=1)
    validity_days: int | None = Field(None, gt=0)
    pkcs12_password: SecretStr | None = None

    check_domain = field_validator("domain_name")(_validate_domain)
    blank_password = field_validator("pkcs12_password", mode="before")(_blank_to_none)

    @property
    def password(self) -> str | None:
        return self.pkcs12_password.get_secret_value() if self.pkcs12_password else None


def validate_input(model: type[M], **values: Any) -> M:
    """Build ``model`` from raw values.

    Raises:
        InvalidInputError: With the names of every field that failed.
    """
    try:
        return model(**values)
    except ValidationError as e:
        errors = e.errors()
        fields = tuple(dict.fromkeys(str(err["loc"][0]) for err in errors if err["loc"]))
        message = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in errors
        )
        raise InvalidInputError(message, fields) from e
