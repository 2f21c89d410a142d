import logging

import pytest

from tidecloak.auth.iam_service import IAMService
from tidecloak.auth.models.config import IAMConfig
from tidecloak.auth.models.errors import NotInitializedError
from tidecloak.shared.browser import MemoryBrowser

DIRECT_CONFIG = {
    "realm": "myrealm",
    "auth-server-url": "https://idp.example.com/",
    "resource": "my-app",
}


class TestLoadConfig:
    def setup_method(self) -> None:
        self.created = []
        self.iam = IAMService(
            browser=MemoryBrowser("https://app.example.com/"),
            adapter_factory=self._factory,
        )

    def _factory(self, options):
        self.created.append(options)
        return _StubAdapter()

    def test_loads_once(self) -> None:
        # Act
        first = self.iam.load_config(DIRECT_CONFIG)
        second = self.iam.load_config({**DIRECT_CONFIG, "realm": "other"})

        # Assert
        assert first is second
        assert second.realm == "myrealm"
        assert len(self.created) == 1

    def test_accepts_prebuilt_config(self) -> None:
        config = IAMConfig.model_validate(DIRECT_CONFIG)
        assert self.iam.load_config(config) is config

    @pytest.mark.parametrize("config", [None, {}])
    def test_empty_config(self, config, caplog) -> None:
        with caplog.at_level(logging.WARNING):
            assert self.iam.load_config(config) is None
        assert "Empty config" in caplog.text

    def test_invalid_config(self) -> None:
        assert self.iam.load_config({"authMode": "unknown"}) is None
        # A failed load doesn't stick
        assert self.iam.load_config(DIRECT_CONFIG) is not None

    def test_adapter_factory_failure(self) -> None:
        # Arrange
        def broken(options):
            raise RuntimeError("bad adapter")

        iam = IAMService(
            browser=MemoryBrowser("https://app.example.com/"),
            adapter_factory=broken,
        )

        # Act & Assert
        assert iam.load_config(DIRECT_CONFIG) is None

    def test_client_origin_auth_is_passed_to_adapter(self) -> None:
        # Act
        self.iam.load_config(
            {**DIRECT_CONFIG, "client-origin-auth-https://app.example.com": "blob"}
        )

        # Assert
        assert self.created[0].client_origin_auth == "blob"

    def test_get_config_and_base_url(self) -> None:
        self.iam.load_config(DIRECT_CONFIG)

        assert self.iam.get_config().realm == "myrealm"
        assert self.iam.get_base_url() == "https://idp.example.com"


class TestBeforeInit:
    def test_accessors_need_config(self) -> None:
        iam = IAMService(browser=MemoryBrowser())

        assert not iam.is_logged_in()
        assert iam.get_base_url() == ""
        assert iam.get_return_url() is None
        with pytest.raises(NotInitializedError):
            iam.get_config()
        with pytest.raises(NotInitializedError):
            iam.get_name()

    async def test_async_operations_need_config(self) -> None:
        with pytest.raises(NotInitializedError):
            await IAMService(browser=MemoryBrowser()).get_token()

    async def test_close_without_mode(self) -> None:
        await IAMService().close()


class TestInitIAM:
    async def test_without_browser_emits_init_error(self) -> None:
        # Arrange
        iam = IAMService()
        errors = []
        iam.on("initError", errors.append)

        # Act
        authenticated = await iam.init_iam(DIRECT_CONFIG)

        # Assert
        assert authenticated is False
        assert len(errors) == 1
        assert "No browser context" in str(errors[0].error)
        assert iam._config is None

    async def test_empty_config_emits_init_error(self) -> None:
        # Arrange
        iam = IAMService(browser=MemoryBrowser())
        errors = []
        iam.on("initError", errors.append)

        # Act
        authenticated = await iam.init_iam({})

        # Assert
        assert authenticated is False
        assert "Failed to load config" in str(errors[0].error)

    async def test_on_ready_is_registered(self) -> None:
        # Arrange
        iam = IAMService(
            browser=MemoryBrowser(), adapter_factory=lambda options: _StubAdapter()
        )
        ready = []

        # Act
        await iam.init_iam(DIRECT_CONFIG, on_ready=ready.append)

        # Assert
        assert [e.authenticated for e in ready] == [False]

    def test_event_registration_chains(self) -> None:
        iam = IAMService()
        assert iam.on("ready", print).off("ready", print) is iam


class _StubAdapter:
    """Minimal unauthenticated OIDC adapter."""

    token = None
    id_token = None
    refresh_token = None
    token_parsed = None
    id_token_parsed = None
    time_skew = 0
    did_initialize = False

    async def init(self, on_load, silent_check_sso_redirect_uri, pkce_method):
        self.did_initialize = True
        return False
