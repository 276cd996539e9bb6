"""OpenSSL-syntax request and extension descriptors.

They mirror exactly what the provider puts into the CSR and the signed
certificate, so a bundle can be reproduced with the ``openssl`` CLI.
"""

from ca_manager.domain.models import DistinguishedName, SanSet

LEAF_KEY_USAGE = "digitalSignature, nonRepudiation, keyEncipherment, dataEncipherment"


def render_request_descriptor(subject: DistinguishedName, san: SanSet, key_size: int) -> str:
    dn_lines = [
        f"C = {subject.country}",
        f"ST = {subject.state}",
        f"L = {subject.locality}",
        f"O = {subject.organization}",
    ]
    if subject.common_name:
        dn_lines.append(f"CN = {subject.common_name}")

    lines = [
        "[req]",
        f"default_bits = {key_size}",
        "prompt = no",
        "default_md = sha256",
        "req_extensions = req_ext",
        "distinguished_name = dn",
        "",
        "[dn]",
        *dn_lines,
        "",
        "[req_ext]",
        "subjectAltName = @alt_names",
        "",
        "[alt_names]",
        *san.config_lines(),
    ]
    return "\n".join(lines) + "\n"


def render_extension_descriptor(san: SanSet) -> str:
    lines = [
        "authorityKeyIdentifier = keyid,issuer",
        "basicConstraints = critical, CA:FALSE",
        f"keyUsage = critical, {LEAF_KEY_USAGE}",
        "subjectKeyIdentifier = hash",
        "subjectAltName = @alt_names",
        "",
        "[alt_names]",
        *san.config_lines(),
    ]
    return "\n".join(lines) + "\n"
