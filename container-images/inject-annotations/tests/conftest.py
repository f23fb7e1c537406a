import pytest

import mutate


ANNOTATIONS = {
    "conduit.io": "hi-im-injected",
    "conduit.io/proxy-version": "test",
}


@pytest.fixture()
def registered():
    return []


@pytest.fixture()
def fake_provider(registered):
    class FakeProvider:
        def register_webhook(self, configuration):
            registered.append(configuration)

    return FakeProvider


@pytest.fixture()
def annotations():
    return dict(ANNOTATIONS)


@pytest.fixture()
def app(fake_provider):
    app = mutate.create_app(
        PROVIDER=fake_provider,
        ANNOTATIONS=dict(ANNOTATIONS),
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def injector_config(app):
    return app.injector_config
