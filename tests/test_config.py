from flask import Flask

from config import DEV_SECRET_KEY, ProductionConfig, TestingConfig, get_config


def production_app(**overrides):
    app = Flask(__name__)
    app.config.from_object(ProductionConfig)
    app.config.update(overrides)
    ProductionConfig.init_app(app)
    return app


def test_production_never_signs_tokens_with_the_default_key():
    app = production_app(SECRET_KEY=DEV_SECRET_KEY, JWT_SECRET_KEY=DEV_SECRET_KEY)
    assert app.config['SECRET_KEY'] != DEV_SECRET_KEY
    assert app.config['JWT_SECRET_KEY'] != DEV_SECRET_KEY
    assert app.config['JWT_SECRET_KEY'] == app.config['SECRET_KEY']


def test_production_jwt_key_follows_the_configured_secret():
    app = production_app(SECRET_KEY='render-secret', JWT_SECRET_KEY=None)
    assert app.config['JWT_SECRET_KEY'] == 'render-secret'


def test_production_keeps_explicit_keys():
    app = production_app(SECRET_KEY='render-secret', JWT_SECRET_KEY='token-secret')
    assert app.config['SECRET_KEY'] == 'render-secret'
    assert app.config['JWT_SECRET_KEY'] == 'token-secret'


def test_production_trusts_one_proxy_hop():
    assert production_app(SECRET_KEY='render-secret').config['PROXY_FIX'] >= 1


def test_get_config():
    assert get_config('testing') is TestingConfig
    assert get_config('production') is ProductionConfig
