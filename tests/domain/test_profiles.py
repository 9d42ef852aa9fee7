"""Tests for TOML settings profiles."""

import pytest

from domain.models import PipelineSettings
from domain.profiles import (
    delete_profile,
    list_profiles,
    load_profile,
    profile_path,
    save_profile,
)


@pytest.fixture
def temp_profiles_dir(tmp_path, monkeypatch):
    profiles_dir = tmp_path / 'profiles'
    profiles_dir.mkdir()
    monkeypatch.setattr('domain.profiles._user_profiles_dir', lambda: profiles_dir)
    return profiles_dir


class TestProfiles:
    """Tests for profile persistence."""

    def test_save_and_load_profile(self, temp_profiles_dir):
        settings = PipelineSettings(batch_size=25, retry_rounds=1, http_cache_enabled=True)
        path = save_profile('fast', settings)

        assert path == temp_profiles_dir / 'fast.toml'
        text = path.read_text(encoding='utf-8')
        assert '[download]' in text
        assert '[http]' in text
        assert load_profile('fast') == settings

    def test_load_by_path(self, temp_profiles_dir):
        save_profile('p', PipelineSettings(max_attempts=5))
        loaded = load_profile(str(temp_profiles_dir / 'p.toml'))
        assert loaded.max_attempts == 5

    def test_load_flat_profile(self, temp_profiles_dir):
        (temp_profiles_dir / 'flat.toml').write_text(
            'batch_size = 11\nuser_agent = "tiles/1.0"\n', encoding='utf-8'
        )
        loaded = load_profile('flat')
        assert loaded.batch_size == 11
        assert loaded.user_agent == 'tiles/1.0'

    def test_invalid_profile(self, temp_profiles_dir):
        (temp_profiles_dir / 'bad.toml').write_text(
            '[download]\nbatch_size = 0\n', encoding='utf-8'
        )
        with pytest.raises(ValueError):
            load_profile('bad')

    def test_list_profiles(self, temp_profiles_dir):
        save_profile('b', PipelineSettings())
        save_profile('a', PipelineSettings())
        (temp_profiles_dir / 'notes.txt').write_text('x')
        assert list_profiles() == ['a', 'b']

    def test_delete_profile(self, temp_profiles_dir):
        save_profile('to_delete', PipelineSettings())
        delete_profile('to_delete')
        assert 'to_delete' not in list_profiles()
        delete_profile('to_delete')

    def test_load_nonexistent_profile(self, temp_profiles_dir):
        with pytest.raises(FileNotFoundError):
            load_profile('nonexistent')

    def test_default_location(self, tmp_path, monkeypatch):
        monkeypatch.setenv('TILEPACK_HOME', str(tmp_path))
        assert profile_path('x') == (tmp_path / 'profiles' / 'x.toml').resolve()
