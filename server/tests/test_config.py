from config import Config


def test_defaults():
    config = Config({})

    assert config.server_url == "http://localhost:8080"
    assert config.debug is False
    assert config.sign is False
    assert config.push_concurrency == 50
    assert config.not_now_retry_ceiling == 0


def test_server_url_normalized():
    assert Config({"MICROMDM_URL": "mdm.example.com/"}).server_url == "https://mdm.example.com"
    assert Config({"MICROMDM_URL": "localhost:8080"}).server_url == "http://localhost:8080"
    assert Config({"MICROMDM_URL": "http://10.0.0.5:9000/"}).server_url == "http://10.0.0.5:9000"


def test_boolean_flags():
    config = Config({"DEBUG": "true", "SIGN": "1", "SIGNED_ENROLLMENT_PROFILE": "no"})

    assert config.debug is True
    assert config.sign is True
    assert config.signed_enrollment_profile is False


def test_invalid_integer_falls_back():
    assert Config({"PUSH_CONCURRENCY": "lots"}).push_concurrency == 50
    assert Config({"PUSH_CONCURRENCY": "0"}).push_concurrency == 1


def test_validate_requires_api_key():
    is_valid, errors, _ = Config({}).validate()

    assert is_valid is False
    assert any("MICROMDM_API_KEY" in e for e in errors)


def test_validate_signing_requirements():
    is_valid, errors, _ = Config({"MICROMDM_API_KEY": "k", "SIGN": "true"}).validate()

    assert is_valid is False
    assert any("SIGNING_CERT" in e for e in errors)
    assert any("ENROLLMENT_PROFILE" in e for e in errors)


def test_validate_presigned_does_not_need_key(tmp_path):
    profile = tmp_path / "enroll.mobileconfig"
    profile.write_bytes(b"")
    config = Config({
        "MICROMDM_API_KEY": "k",
        "SIGN": "true",
        "SIGNED_ENROLLMENT_PROFILE": "true",
        "ENROLLMENT_PROFILE": str(profile),
        "SIGNING_CERT": "/etc/director/signing.pem",
    })

    is_valid, errors, _ = config.validate()

    assert is_valid is True
    assert errors == []
