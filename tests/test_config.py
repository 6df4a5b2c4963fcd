from __future__ import annotations

import pytest
import yaml

import facturador.config as config_mod
from facturador.services.exceptions import ConfigurationError


class TestResolveDir:
    def test_from_env_var(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FACTURADOR_CONFIG_DIR", str(tmp_path))
        assert config_mod._resolve_dir("FACTURADOR_CONFIG_DIR", "config", kind="config") == tmp_path

    def test_project_root_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("FACTURADOR_CONFIG_DIR", raising=False)
        fake_pkg = tmp_path / "src" / "facturador"
        fake_pkg.mkdir(parents=True)
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        monkeypatch.setattr(config_mod, "__file__", str(fake_pkg / "config.py"))
        assert config_mod._resolve_dir("FACTURADOR_CONFIG_DIR", "config", kind="config") == config_dir

    def test_platformdirs_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("FACTURADOR_DATA_DIR", raising=False)
        fake_pkg = tmp_path / "nowhere" / "src" / "facturador"
        fake_pkg.mkdir(parents=True)
        monkeypatch.setattr(config_mod, "__file__", str(fake_pkg / "config.py"))
        result = config_mod._resolve_dir("FACTURADOR_DATA_DIR", "data", kind="data")
        assert "arca-facturador" in str(result)


class TestNormalizeEnv:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, "homologacion"),
            ("", "homologacion"),
            ("test", "homologacion"),
            ("HOMO", "homologacion"),
            ("prod", "produccion"),
            ("production", "produccion"),
            ("produccion", "produccion"),
        ],
    )
    def test_aliases(self, value, expected):
        assert config_mod.normalize_env(value) == expected

    def test_unknown(self):
        with pytest.raises(ConfigurationError, match="Entorno desconocido"):
            config_mod.normalize_env("staging")

    def test_endpoints_per_env(self):
        assert config_mod.ENDPOINTS["homologacion"]["wsaa"]["url"].startswith("https://wsaahomo.")
        assert config_mod.ENDPOINTS["produccion"]["wsfe"]["url"] == (
            "https://servicios1.afip.gov.ar/wsfev1/service.asmx"
        )


class TestKeyPassword:
    def test_env_var_wins(self, config_dir, monkeypatch):
        monkeypatch.setenv("ARCA_KEY_PASSWORD", "secret")
        monkeypatch.setattr("facturador.config._get_keyring_password", lambda: "other")
        assert config_mod.get_key_password() == "secret"

    def test_keyring_fallback(self, config_dir, monkeypatch):
        monkeypatch.setattr("facturador.config._get_keyring_password", lambda: "from-keyring")
        assert config_mod.get_key_password() == "from-keyring"

    def test_none(self, config_dir):
        assert config_mod.get_key_password() is None


class TestLoadSettings:
    def test_missing_file(self, config_dir):
        assert config_mod.load_settings() == {}

    def test_reads_yaml(self, config_dir):
        (config_dir / "arca.yaml").write_text(yaml.dump({"cuit": "20123456786", "entorno": "prod"}))
        assert config_mod.load_settings()["entorno"] == "prod"
        assert config_mod.get_env() == "produccion"

    def test_env_var_overrides_yaml(self, config_dir, monkeypatch):
        (config_dir / "arca.yaml").write_text(yaml.dump({"entorno": "produccion"}))
        monkeypatch.setenv("ARCA_ENV", "test")
        assert config_mod.get_env() == "homologacion"

    def test_not_a_mapping(self, config_dir):
        (config_dir / "arca.yaml").write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapeo"):
            config_mod.load_settings()

    def test_ticket_path(self, config_dir, tmp_path):
        path = config_mod.get_ticket_path("20123456786", "homologacion")
        assert path == tmp_path / "data" / "tickets" / "20123456786-homologacion.json"


class TestLoadCredentials:
    def test_inline_pem_with_escaped_newlines(self, config_dir, monkeypatch, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        monkeypatch.setenv("ARCA_CUIT", "20-12345678-6")
        monkeypatch.setenv("ARCA_CERT", cert_pem.decode().replace("\n", "\\n"))
        monkeypatch.setenv("ARCA_KEY", key_pem.decode().replace("\n", "\\n"))
        creds = config_mod.load_credentials()
        assert creds.cuit == "20123456786"
        assert creds.cert_pem == cert_pem
        assert creds.key_pem == key_pem
        assert creds.env == "homologacion"
        assert creds.service == "wsfe"

    def test_pem_paths(self, config_dir, monkeypatch, tmp_path, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        (tmp_path / "cert.crt").write_bytes(cert_pem)
        (tmp_path / "key.key").write_bytes(key_pem)
        monkeypatch.setenv("ARCA_CUIT", "20123456786")
        monkeypatch.setenv("ARCA_CERT_PATH", str(tmp_path / "cert.crt"))
        monkeypatch.setenv("ARCA_KEY_PATH", str(tmp_path / "key.key"))
        monkeypatch.setenv("ARCA_KEY_PASSWORD", "pw")
        creds = config_mod.load_credentials()
        assert creds.cert_pem == cert_pem
        assert creds.key_password == "pw"

    def test_pfx(self, config_dir, monkeypatch, test_pfx):
        pfx_path, password = test_pfx
        monkeypatch.setenv("ARCA_CUIT", "20123456786")
        monkeypatch.setenv("ARCA_PFX_PATH", pfx_path)
        monkeypatch.setenv("ARCA_PFX_PASSWORD", password)
        creds = config_mod.load_credentials()
        assert creds.cert_pem.startswith(b"-----BEGIN CERTIFICATE-----")
        assert creds.key_password is None

    def test_cuit_from_yaml(self, config_dir, monkeypatch, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        (config_dir / "arca.yaml").write_text(
            yaml.dump({"cuit": "20123456786", "entorno": "produccion", "servicio": "wsfe"})
        )
        monkeypatch.setenv("ARCA_CERT", cert_pem.decode())
        monkeypatch.setenv("ARCA_KEY", key_pem.decode())
        creds = config_mod.load_credentials()
        assert creds.env == "produccion"
        assert creds.point_of_sale is None

    def test_point_of_sale_from_yaml(self, config_dir, monkeypatch, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        (config_dir / "arca.yaml").write_text(yaml.dump({"cuit": "20123456786", "punto_venta": 3}))
        monkeypatch.setenv("ARCA_CERT", cert_pem.decode())
        monkeypatch.setenv("ARCA_KEY", key_pem.decode())
        assert config_mod.load_credentials().point_of_sale == 3
        monkeypatch.setenv("ARCA_PTO_VTA", "7")
        assert config_mod.load_credentials().point_of_sale == 7

    @pytest.mark.parametrize("value", ["abc", "0"])
    def test_invalid_point_of_sale(self, config_dir, monkeypatch, self_signed_pem, value):
        key_pem, cert_pem = self_signed_pem
        monkeypatch.setenv("ARCA_CUIT", "20123456786")
        monkeypatch.setenv("ARCA_PTO_VTA", value)
        monkeypatch.setenv("ARCA_CERT", cert_pem.decode())
        monkeypatch.setenv("ARCA_KEY", key_pem.decode())
        with pytest.raises(ConfigurationError, match="punto_venta"):
            config_mod.load_credentials()

    def test_missing_cuit(self, config_dir):
        with pytest.raises(ConfigurationError, match="ARCA_CUIT"):
            config_mod.load_credentials()

    def test_invalid_cuit(self, config_dir, monkeypatch):
        monkeypatch.setenv("ARCA_CUIT", "20123456787")
        with pytest.raises(ConfigurationError, match="verificador"):
            config_mod.load_credentials()

    def test_missing_key(self, config_dir, monkeypatch):
        monkeypatch.setenv("ARCA_CUIT", "20123456786")
        monkeypatch.setenv("ARCA_CERT", "-----BEGIN CERTIFICATE-----")
        with pytest.raises(ConfigurationError, match="ARCA_KEY"):
            config_mod.load_credentials()

    def test_no_material(self, config_dir, monkeypatch):
        monkeypatch.setenv("ARCA_CUIT", "20123456786")
        with pytest.raises(ConfigurationError, match="ARCA_PFX_PATH"):
            config_mod.load_credentials()

    def test_unreadable_path(self, config_dir, monkeypatch, tmp_path):
        monkeypatch.setenv("ARCA_CUIT", "20123456786")
        monkeypatch.setenv("ARCA_CERT_PATH", str(tmp_path / "missing.crt"))
        monkeypatch.setenv("ARCA_KEY_PATH", str(tmp_path / "missing.key"))
        with pytest.raises(ConfigurationError, match="ARCA_CERT_PATH"):
            config_mod.load_credentials()
