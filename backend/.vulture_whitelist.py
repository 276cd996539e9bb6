from backend.src.ca_manager.domain.models import IssuedCertificate, RootCA
from backend.src.ca_manager.domain.schemas import CertificateParams, RenewalParams, RootCAParams
from backend.src.ca_manager.metrics import root_ca_loaded_gauge
from backend.src.shared.config import Settings

# Pydantic Settings
Settings.model_config
Settings.APP_NAME
Settings.LOG_LEVEL

# Pydantic validators (called by pydantic, never directly)
RootCAParams.model_config
RootCAParams.upper_country
CertificateParams.model_config
CertificateParams.check_domain
CertificateParams.blank_optional
RenewalParams.model_config
RenewalParams.check_domain
RenewalParams.blank_password

# Result attributes read by callers and tests
RootCA.subject_key_identifier
IssuedCertificate.not_before

# Observable gauge, polled by the meter provider
root_ca_loaded_gauge
