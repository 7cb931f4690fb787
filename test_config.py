"""
配置管理测试
"""

import pytest

from config import (
    DEFAULT_PORT,
    ConfigError,
    Credentials,
    ProxyConfig,
    build_config,
    load_config,
    load_env,
)


def test_defaults_without_file_or_env():
    config = build_config({}, env={})
    assert config.host == '0.0.0.0'
    assert config.port == DEFAULT_PORT == 1080
    assert config.username is None
    assert config.handshake_timeout == 60.0
    assert config.connect_timeout == 30.0


def test_env_overrides_file():
    data = {'proxy': {'port': 2000, 'username': 'file-user', 'password': 'file-pass'}}
    env = {'PORT': '3000', 'PROXY_USERNAME': 'env-user', 'PROXY_PASSWORD': 'env-pass'}
    config = build_config(data, env=env)

    assert config.port == 3000
    assert config.username == 'env-user'
    assert config.password == 'env-pass'


def test_empty_port_env_falls_back_to_default():
    config = build_config({}, env={'PORT': ''})
    assert config.port == 1080


def test_invalid_port_env():
    with pytest.raises(ConfigError):
        build_config({}, env={'PORT': 'abc'})


def test_load_yaml_file(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "proxy:\n"
        "  host: 127.0.0.1\n"
        "  port: 1081\n"
        "  username: alice\n"
        "  password: 123456\n"
        "  handshake_timeout: 0\n"
        "  buffer_size: 8192\n"
        "logging:\n"
        "  level: DEBUG\n",
        encoding='utf-8'
    )
    config = build_config(load_config(str(path)), env={})

    assert config.host == '127.0.0.1'
    assert config.port == 1081
    assert config.username == 'alice'
    # 纯数字密码按字符串处理
    assert config.password == '123456'
    assert config.buffer_size == 8192
    assert config.effective_handshake_timeout is None


def test_load_empty_yaml_file(tmp_path):
    path = tmp_path / 'empty.yaml'
    path.write_text('', encoding='utf-8')
    assert load_config(str(path)) == {}


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / 'missing.yaml'))


@pytest.mark.parametrize('kwargs', [
    dict(username=None, password='pass'),
    dict(username='user', password=None),
    dict(username='user', password=''),
    dict(username='u' * 256, password='pass'),
    dict(username='user', password='pass', port=70000),
    dict(username='user', password='pass', buffer_size=0),
])
def test_validate_rejects(kwargs):
    with pytest.raises(ConfigError):
        ProxyConfig(**kwargs).validate()


def test_credentials_are_frozen():
    credentials = ProxyConfig(username='user', password='pass').credentials()
    assert credentials == Credentials('user', 'pass')
    with pytest.raises(Exception):
        credentials.username = 'other'


def test_credentials_match_exact_bytes():
    credentials = Credentials('usér', 'pass')
    assert credentials.matches('usér'.encode('utf-8'), b'pass')
    assert not credentials.matches(b'user', b'pass')
    assert not credentials.matches('usér'.encode('utf-8'), b'Pass')


def test_env_file_values_reach_config(tmp_path):
    env_file = tmp_path / '.env'
    env_file.write_text('PORT=4000\nPROXY_USERNAME=dot-user\nPROXY_PASSWORD=dot-pass\n', encoding='utf-8')

    config = build_config({}, env=load_env(str(env_file), environ={}))
    assert config.port == 4000
    assert config.username == 'dot-user'
    assert config.password == 'dot-pass'


def test_process_env_wins_over_env_file(tmp_path):
    env_file = tmp_path / '.env'
    env_file.write_text('PORT=4000\nPROXY_USERNAME=dot-user\n', encoding='utf-8')

    env = load_env(str(env_file), environ={'PORT': '5000'})
    assert env['PORT'] == '5000'
    assert env['PROXY_USERNAME'] == 'dot-user'


def test_missing_env_file_is_ignored(tmp_path):
    assert load_env(str(tmp_path / 'none.env'), environ={'PORT': '1'}) == {'PORT': '1'}
    assert load_env(None, environ={}) == {}


def test_malformed_yaml_is_config_error(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('proxy: [unclosed\n', encoding='utf-8')
    with pytest.raises(ConfigError):
        load_config(str(path))
