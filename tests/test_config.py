import pytest

from natmap.config import Settings, load_settings, parse_bool, parse_int
from natmap.errors import ValidationError


def test_defaults():
    settings = load_settings(env={})
    assert settings == Settings()
    assert settings.net_prefix == '10.0.0.'
    assert settings.host_address(105) == '10.0.0.105'
    assert settings.host_id_of('10.0.0.105') == 105
    assert settings.host_id_of('10.0.1.105') is None


def test_environment_overrides():
    settings = load_settings(env={
        'NATMAP_SUBNET': '192.168.50.0/24',
        'NATMAP_MIN_HOST': '10',
        'AUTO_PERSIST': '0',
        'RULES_FILE': '/tmp/rules.v4',
        'NATMAP_BACKENDS': 'iptables-nft, iptables',
    })
    assert settings.net_prefix == '192.168.50.'
    assert settings.min_host == 10
    assert settings.auto_persist is False
    assert settings.rules_file == '/tmp/rules.v4'
    assert settings.backends == ('iptables-nft', 'iptables')


def test_yaml_file_then_env_then_overrides(tmp_path):
    config = tmp_path / 'natmap.yaml'
    config.write_text(
        "max_host: 200\n"
        "ports_per_host: 40\n"
        "auto_install_deps: false\n"
        "backends: [iptables-legacy]\n"
        "unknown_option: 1\n"
    )
    settings = load_settings(
        str(config),
        env={'NATMAP_PORTS_PER_HOST': '30'},
        overrides={'auto_persist': False, 'max_host': None},
    )
    assert settings.max_host == 200
    assert settings.ports_per_host == 30
    assert settings.auto_install_deps is False
    assert settings.auto_persist is False
    assert settings.backends == ('iptables-legacy',)


def test_config_path_from_environment(tmp_path):
    config = tmp_path / 'natmap.yaml'
    config.write_text("min_host: 50\n")
    assert load_settings(env={'NATMAP_CONFIG': str(config)}).min_host == 50


def test_empty_config_file(tmp_path):
    config = tmp_path / 'empty.yaml'
    config.write_text('')
    assert load_settings(str(config), env={}) == Settings()


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(str(tmp_path / 'missing.yaml'), env={})


@pytest.mark.parametrize('env', [
    {'NATMAP_SUBNET': '10.0.0.0/16'},
    {'NATMAP_SUBNET': 'not-a-network'},
    {'NATMAP_MIN_HOST': '200', 'NATMAP_MAX_HOST': '100'},
    {'NATMAP_MAX_HOST': '255'},
    {'NATMAP_PORTS_PER_HOST': '0'},
    {'NATMAP_MIN_HOST': 'abc'},
    {'NATMAP_MIN_HOST': '١٠٠'},
    {'NATMAP_BASE_SSH_PORT': '³'},
    {'AUTO_PERSIST': 'maybe'},
])
def test_invalid_settings(env):
    with pytest.raises(ValidationError):
        load_settings(env=env)


def test_parse_bool():
    assert parse_bool('YES') is True
    assert parse_bool('off') is False
    assert parse_bool(True) is True


def test_parse_int_accepts_ascii_digits_only():
    assert parse_int(' 42 ') == 42
    assert parse_int(7) == 7
    for bad in ('²', '٤٢', '4.2', '', True):
        with pytest.raises(ValidationError):
            parse_int(bad, 'base_ssh_port')


def test_host_id_of_ignores_non_ascii_digits():
    settings = Settings()
    assert settings.host_id_of('10.0.0.105') == 105
    assert settings.host_id_of('10.0.0.١٠٥') is None
