import datetime
import ssl

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from sriovconf.tlsreload import TlsKeypairReloader


def _keypair(directory, stem):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ).decode()
    cert_path = directory / f"{stem}.crt"
    key_path = directory / f"{stem}.key"
    cert_path.write_text(cert_pem)
    key_path.write_text(key_pem)
    return cert_path, key_path, cert_pem, key_pem


def test_loads_pair(tmp_path):
    cert_path, key_path, cert_pem, _ = _keypair(tmp_path, "a")
    reloader = TlsKeypairReloader(str(cert_path), str(key_path))
    assert reloader.certificate == cert_pem
    assert reloader.context().protocol == ssl.PROTOCOL_TLS_SERVER


def test_missing_files_fail(tmp_path):
    with pytest.raises(FileNotFoundError):
        TlsKeypairReloader(str(tmp_path / "none.crt"), str(tmp_path / "none.key"))


def test_mismatched_key_fails(tmp_path):
    cert_path, _, _, _ = _keypair(tmp_path, "a")
    _, other_key, _, _ = _keypair(tmp_path, "b")
    with pytest.raises(ssl.SSLError):
        TlsKeypairReloader(str(cert_path), str(other_key))


def test_reload_picks_up_new_pair(tmp_path):
    cert_path, key_path, first_pem, _ = _keypair(tmp_path, "a")
    reloader = TlsKeypairReloader(str(cert_path), str(key_path))
    old_context = reloader.context()
    _, _, second_pem, second_key = _keypair(tmp_path, "b")
    cert_path.write_text(second_pem)
    key_path.write_text(second_key)
    reloader.reload()
    assert reloader.certificate == second_pem
    assert reloader.certificate != first_pem
    assert reloader.context() is not old_context


def test_failed_reload_keeps_current_pair(tmp_path):
    cert_path, key_path, cert_pem, _ = _keypair(tmp_path, "a")
    reloader = TlsKeypairReloader(str(cert_path), str(key_path))
    old_context = reloader.context()
    _, _, _, other_key = _keypair(tmp_path, "b")
    key_path.write_text(other_key)
    with pytest.raises(ssl.SSLError):
        reloader.reload()
    assert reloader.certificate == cert_pem
    assert reloader.context() is old_context