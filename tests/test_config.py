from market_radar import config
from market_radar.config import DEFAULT_CONFIG, load_config


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'load_dotenv', lambda: None)
    monkeypatch.delenv('MARKET_RADAR_DATA_DIR', raising=False)
    monkeypatch.delenv('MARKET_RADAR_BACKEND_URL', raising=False)
    assert load_config(str(tmp_path / 'missing.yaml')) == DEFAULT_CONFIG


def test_yaml_overrides_merge_into_defaults(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'load_dotenv', lambda: None)
    monkeypatch.delenv('MARKET_RADAR_DATA_DIR', raising=False)
    monkeypatch.setenv('MARKET_RADAR_BACKEND_URL', 'http://proxy.local')
    path = tmp_path / 'config.yaml'
    path.write_text('intervals:\n  tickers_sec: 15\nradar:\n  default_preset: aggressive\n', encoding='utf-8')

    cfg = load_config(str(path))

    assert cfg['intervals'] == {'tickers_sec': 15, 'depth_sec': 10, 'institutional_sec': 60}
    assert cfg['radar']['default_preset'] == 'aggressive'
    assert cfg['backend']['url'] == 'http://proxy.local'
    assert DEFAULT_CONFIG['intervals']['tickers_sec'] == 30
