"""Human-readable companion files written next to the PKI material."""

STORE_README = """\
=== Local CA Manager store layout ===

1. root_ca/
   The heart of your certificate authority.
   - rootCA.key: the CA private key. NEVER hand it out.
   - rootCA.crt: the public certificate. Import it on every client/server
     that should trust certificates issued here.
   - rootCA.srl: serial number counter.

2. issued_certs/
   One sub-directory per domain. Wildcard domains live in "wildcard_<domain>".

3. configs/
   Request (.cnf) and extension (.ext) descriptors in OpenSSL syntax.
   They are regenerated on every issuance and may be deleted.
"""

ROOT_TRUST_GUIDE = """\
This directory holds your root CA.

FILES:
- rootCA.key: the private key. It signs everything. If it is stolen, nothing issued here can be trusted.
- rootCA.crt: the certificate.

INSTALLATION:
Browsers only accept issued certificates after rootCA.crt has been imported:
1. Windows: double-click -> Install Certificate -> Local Machine -> "Trusted Root Certification Authorities".
2. Linux: cp rootCA.crt /usr/local/share/ca-certificates/ && update-ca-certificates
3. Firefox: Settings -> Privacy & Security -> Certificates -> Import -> tick "Trust this CA to identify websites".
"""


def usage_guide(domain_name: str, directory: str, pkcs12_file: str) -> str:
    """Deployment notes for one issued certificate bundle."""
    return f"""\
Certificates for: {domain_name}

1. NGINX / APACHE (Linux web servers):
   - ssl_certificate:     {directory}/fullchain.pem
   - ssl_certificate_key: {directory}/privkey.pem

2. WINDOWS (IIS / Exchange):
   - Use the file: {pkcs12_file}
   - Import it into the certificate store (Personal or Web Hosting).

3. FILES:
   - cert.pem: the server certificate alone.
   - fullchain.pem: certificate + root CA (needed for a complete chain).
   - privkey.pem: your secret key.

Renewing issues a brand-new key pair and certificate. Nothing is revoked;
redeploy the new files wherever the old ones were installed.
"""
