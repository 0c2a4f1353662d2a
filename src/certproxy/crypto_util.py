"""certproxy crypto utility functions."""
import datetime
import hashlib
import logging
import re
from typing import Optional
from typing import Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.hazmat.primitives.serialization import NoEncryption
from cryptography.hazmat.primitives.serialization import PrivateFormat

from acme import crypto_util as acme_crypto_util
from certproxy import errors

logger = logging.getLogger(__name__)

SUPPORTED_CURVES = ('SECP256R1', 'SECP384R1', 'SECP521R1')


def make_key(bits: int = 2048, key_type: str = "rsa",
             elliptic_curve: Optional[str] = None) -> bytes:
    """Generate PEM encoded RSA|EC key.

    :param int bits: Number of bits if key_type=rsa. At least 2048 for RSA.
    :param str key_type: The type of key to generate, but be rsa or ecdsa
    :param str elliptic_curve: The elliptic curve to use.

    :returns: new RSA or ECDSA key in PEM form with specified number of bits
              or of type ec_curve when key_type ecdsa is used.
    :rtype: bytes

    """
    key: Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]
    if key_type == 'rsa':
        if bits < 2048:
            raise errors.Error("Unsupported RSA key length: {}".format(bits))

        key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    elif key_type == 'ecdsa':
        if not elliptic_curve:
            raise errors.Error("When key_type == ecdsa, elliptic_curve must be set.")
        name = elliptic_curve.upper()
        if name not in SUPPORTED_CURVES:
            raise errors.Error("Unsupported elliptic curve: {}".format(elliptic_curve))
        try:
            key = ec.generate_private_key(curve=getattr(ec, name)())
        except UnsupportedAlgorithm as e:
            raise errors.Error(str(e)) from e
    else:
        raise errors.Error("Invalid key_type specified: {}.  Use [rsa|ecdsa]".format(key_type))
    return key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.PKCS8,
        encryption_algorithm=NoEncryption()
    )


def make_csr(key_pem: bytes, domain: str) -> bytes:
    """Generate a CSR for a single domain.

    :param bytes key_pem: private key in PEM form
    :param str domain: the name placed in the subjectAltName extension

    :returns: CSR in PEM form
    :rtype: bytes

    """
    return acme_crypto_util.make_csr(key_pem, [domain])


def load_cert(cert_pem: Union[str, bytes]) -> x509.Certificate:
    """Parse a PEM certificate.

    :raises .errors.CertStorageError: if the data is not a certificate

    """
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode()
    try:
        return x509.load_pem_x509_certificate(cert_pem)
    except ValueError as error:
        raise errors.CertStorageError(f"Unable to parse certificate: {error}")


def notBefore(cert_pem: Union[str, bytes]) -> datetime.datetime:
    """When does the cert start being valid?

    :param cert_pem: a cert in PEM format

    :returns: the notBefore value of the cert, in UTC
    :rtype: :class:`datetime.datetime`

    """
    return load_cert(cert_pem).not_valid_before_utc


def notAfter(cert_pem: Union[str, bytes]) -> datetime.datetime:
    """When does the cert stop being valid?

    :param cert_pem: a cert in PEM format

    :returns: the notAfter value of the cert, in UTC
    :rtype: :class:`datetime.datetime`

    """
    return load_cert(cert_pem).not_valid_after_utc


def issuer(cert_pem: Union[str, bytes]) -> str:
    """RFC 4514 string of the issuer distinguished name of the cert."""
    return load_cert(cert_pem).issuer.rfc4514_string()


def sha256sum(data: Union[str, bytes]) -> str:
    """Compute a sha256 hex digest of data."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


CERT_PEM_REGEX = re.compile(
    b"""-----BEGIN CERTIFICATE-----\r?
.+?\r?
-----END CERTIFICATE-----\r?
""",
    re.DOTALL  # DOTALL (/s) because the base64text may include newlines
)


def cert_and_chain_from_fullchain(fullchain_pem: str) -> tuple[str, str]:
    """Split fullchain_pem into cert_pem and chain_pem

    :param str fullchain_pem: concatenated cert + chain

    :returns: tuple of string cert_pem and chain_pem
    :rtype: tuple

    :raises errors.Error: If no certificate can be found.

    """
    certs = CERT_PEM_REGEX.findall(fullchain_pem.encode())
    if not certs:
        raise errors.Error("failed to parse fullchain into cert and chain: "
                           "no certificate found")

    # Re-encode each certificate to normalize encoding variations (CRLF, whitespace).
    certs_normalized: list[str] = []
    for cert_pem in certs:
        cert = x509.load_pem_x509_certificate(cert_pem)
        certs_normalized.append(cert.public_bytes(Encoding.PEM).decode())

    return certs_normalized[0], "".join(certs_normalized[1:])
