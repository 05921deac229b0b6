import configparser
import logging
import os
import unittest

import pytest

from ssh_uploader.config_manager import (MAX_CONFIG_BACKUPS, TEMPLATE_PATH, ConfigValidator, UploadSettings,
                                         load_config, update_config)


class TestConfigValidation(unittest.TestCase):
    def setUp(self):
        self.config = configparser.ConfigParser()
        self.config['SETTINGS'] = {
            'chunk_size': '65536',
            'max_concurrent_uploads': '4',
            'compression_level': '6',
            'temp_dir': '',
            'exclude_dirs': '.git, .svn, .hg',
        }
        self.config['CONNECTION'] = {
            'port': '22',
            'connect_timeout': '10',
            'connect_retries': '2',
            'retry_delay': '5',
            'keepalive_interval': '30',
        }

    def test_valid_config(self):
        validator = ConfigValidator(self.config)
        self.assertTrue(validator.validate())
        self.assertEqual(validator.errors, [])
        self.assertEqual(validator.warnings, [])

    def test_missing_section(self):
        self.config.remove_section('CONNECTION')
        validator = ConfigValidator(self.config)
        self.assertFalse(validator.validate())
        self.assertIn("Missing required section: [CONNECTION]", validator.errors)

    def test_empty_required_option(self):
        self.config['SETTINGS']['chunk_size'] = ' '
        validator = ConfigValidator(self.config)
        self.assertFalse(validator.validate())
        self.assertTrue([e for e in validator.errors if 'chunk_size' in e])

    def test_non_integer_option(self):
        self.config['CONNECTION']['port'] = 'twenty-two'
        validator = ConfigValidator(self.config)
        self.assertFalse(validator.validate())
        self.assertTrue([e for e in validator.errors if "'port'" in e])

    def test_compression_level_out_of_range_is_an_error(self):
        self.config['SETTINGS']['compression_level'] = '12'
        validator = ConfigValidator(self.config)
        self.assertFalse(validator.validate())

    def test_concurrency_out_of_range_is_a_warning(self):
        self.config['SETTINGS']['max_concurrent_uploads'] = '50'
        validator = ConfigValidator(self.config)
        self.assertTrue(validator.validate())
        warnings = [w for w in validator.warnings if 'max_concurrent_uploads' in w]
        self.assertTrue(warnings, "Expected warning for max_concurrent_uploads=50")

    def test_concurrency_above_four_is_clamped(self):
        self.config['SETTINGS']['max_concurrent_uploads'] = '8'
        validator = ConfigValidator(self.config)
        self.assertTrue(validator.validate())
        self.assertTrue([w for w in validator.warnings if '4 will be used' in w])

    def test_missing_temp_dir_is_a_warning(self):
        self.config['SETTINGS']['temp_dir'] = '/definitely/not/here'
        validator = ConfigValidator(self.config)
        self.assertTrue(validator.validate())
        self.assertTrue([w for w in validator.warnings if 'temp_dir' in w])


class TestUploadSettings(unittest.TestCase):

    def test_from_config(self):
        config = configparser.ConfigParser()
        config['SETTINGS'] = {'chunk_size': '131072', 'max_concurrent_uploads': '2',
                              'compression_level': '9', 'exclude_dirs': '.git, node_modules ,'}
        config['CONNECTION'] = {'port': '2222', 'connect_retries': '3', 'retry_delay': '1.5'}

        settings = UploadSettings.from_config(config)

        self.assertEqual(settings.chunk_size, 131072)
        self.assertEqual(settings.max_concurrent_uploads, 2)
        self.assertEqual(settings.compression_level, 9)
        self.assertEqual(settings.exclude_dirs, frozenset({'.git', 'node_modules'}))
        self.assertEqual(settings.port, 2222)
        self.assertEqual(settings.connect_retries, 3)
        self.assertEqual(settings.retry_delay, 1.5)
        self.assertIsNone(settings.temp_dir)

    def test_defaults_when_sections_missing(self):
        settings = UploadSettings.from_config(configparser.ConfigParser())
        self.assertEqual(settings, UploadSettings())


def test_update_config_creates_file_from_template(fs):
    fs.add_real_file(TEMPLATE_PATH)
    update_config('/home/alice/.ssh_uploader/config.ini', str(TEMPLATE_PATH))

    config = load_config('/home/alice/.ssh_uploader/config.ini')
    assert config.getint('SETTINGS', 'compression_level') == 6
    assert ConfigValidator(config).validate()


def test_update_config_adds_missing_options_and_keeps_values(fs):
    fs.add_real_file(TEMPLATE_PATH)
    fs.create_file('/cfg/config.ini', contents=(
        "[SETTINGS]\n"
        "# my tuned value\n"
        "max_concurrent_uploads = 8\n"
    ))

    added = update_config('/cfg/config.ini', str(TEMPLATE_PATH))

    assert '[SETTINGS] chunk_size' in added
    assert '[CONNECTION] port' in added
    assert '[SETTINGS] max_concurrent_uploads' not in added
    config = load_config('/cfg/config.ini')
    assert config.getint('SETTINGS', 'max_concurrent_uploads') == 8
    assert config.getint('SETTINGS', 'chunk_size') == 65536
    assert config.getint('CONNECTION', 'port') == 22
    with open('/cfg/config.ini', encoding='utf-8') as f:
        assert '# my tuned value' in f.read()
    assert len(os.listdir('/cfg/backup')) == 1


def test_load_config_missing_file_exits(fs):
    with pytest.raises(SystemExit) as excinfo:
        load_config('/nowhere/config.ini')
    assert excinfo.value.code == 1


def test_update_config_reports_unknown_options(fs, caplog):
    fs.add_real_file(TEMPLATE_PATH)
    fs.create_file('/cfg/config.ini', contents="[SETTINGS]\nchunk_size = 65536\nbandwidth_limit = 10\n")

    with caplog.at_level(logging.WARNING):
        update_config('/cfg/config.ini', str(TEMPLATE_PATH))

    assert any('[SETTINGS] bandwidth_limit' in r.getMessage() for r in caplog.records)
    assert load_config('/cfg/config.ini').get('SETTINGS', 'bandwidth_limit') == '10'


def test_update_config_keeps_only_recent_backups(fs):
    fs.add_real_file(TEMPLATE_PATH)
    fs.create_file('/cfg/config.ini', contents="[SETTINGS]\nchunk_size = 65536\n")
    for i in range(MAX_CONFIG_BACKUPS + 1):
        fs.create_file(f'/cfg/backup/config.bak_20200101-00000{i}')

    update_config('/cfg/config.ini', str(TEMPLATE_PATH))

    backups = sorted(os.listdir('/cfg/backup'))
    assert len(backups) == MAX_CONFIG_BACKUPS
    assert 'config.bak_20200101-000000' not in backups
    assert not backups[-1].startswith('config.bak_2020')


def test_up_to_date_config_is_not_rewritten(fs):
    fs.add_real_file(TEMPLATE_PATH)
    update_config('/cfg/config.ini', str(TEMPLATE_PATH))

    assert update_config('/cfg/config.ini', str(TEMPLATE_PATH)) == []
    assert not os.path.exists('/cfg/backup')
