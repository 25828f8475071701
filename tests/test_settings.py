# tests/test_settings.py
"""
Unit tests for CarCost.settings.lib
(covers validators, ConfigPaths, and SettingsAPI).

Run with:
    python -m unittest tests.test_settings
"""

import copy
import json
import unittest
from pathlib import Path
from typing import Any, Dict

from CarCost.core.signals import signals
from CarCost.settings import lib
from CarCost.settings.lib import (
    SETTINGS_SCHEMA,
    SettingsAPI,
    _validate_item_schema,
    _validate_worksheets,
)
from CarCost.status import status
from tests.base import BaseTestCase

DUMMY_SECRET = {
    'installed': {
        'client_id': 'dummy',
        'project_id': 'dummy',
        'client_secret': 'dummy',
        'auth_uri': 'https://example',
        'token_uri': 'https://example',
    }
}

WORKSHEETS = {
    'cars': 'Cars',
    'expenses': 'Expenses',
    'reminders': 'Reminders',
    'tags': 'Tags',
    'tag_links': 'TagLinks',
    'planned_expenses': 'Planned',
}


def minimal_settings() -> Dict[str, Any]:
    return {
        'spreadsheet': {'id': 'dummy'},
        'worksheets': dict(WORKSHEETS),
        'remote': {'timeout': 10, 'num_retries': 0},
        'sync': {'tag_links': True, 'planned_expenses': False},
    }


def write_json(p: Path, data: Dict[str, Any]) -> None:
    with p.open('w', encoding='utf-8') as f:
        json.dump(data, f, indent=4, ensure_ascii=False)


class ValidatorTests(unittest.TestCase):

    def test_item_schema_good(self):
        _validate_item_schema('remote', {'timeout': 2.5, 'num_retries': 1}, SETTINGS_SCHEMA['remote']['item_schema'])

    def test_item_schema_missing_field(self):
        with self.assertRaises(ValueError):
            _validate_item_schema('remote', {'timeout': 1}, SETTINGS_SCHEMA['remote']['item_schema'])

    def test_item_schema_wrong_type(self):
        with self.assertRaises(TypeError):
            _validate_item_schema('remote', {'timeout': '1', 'num_retries': 1},
                                  SETTINGS_SCHEMA['remote']['item_schema'])

    def test_item_schema_bool_is_not_int(self):
        with self.assertRaises(TypeError):
            _validate_item_schema('remote', {'timeout': 1, 'num_retries': True},
                                  SETTINGS_SCHEMA['remote']['item_schema'])

    def test_worksheets_good(self):
        _validate_worksheets(WORKSHEETS, SETTINGS_SCHEMA['worksheets'])

    def test_worksheets_missing_key(self):
        worksheets = dict(WORKSHEETS)
        del worksheets['tags']
        with self.assertRaises(ValueError):
            _validate_worksheets(worksheets, SETTINGS_SCHEMA['worksheets'])

    def test_worksheets_must_be_unique(self):
        worksheets = dict(WORKSHEETS, tags='Cars')
        with self.assertRaises(ValueError):
            _validate_worksheets(worksheets, SETTINGS_SCHEMA['worksheets'])

    def test_worksheets_bad_names(self):
        with self.assertRaises(ValueError):
            _validate_worksheets(dict(WORKSHEETS, cars='  '), SETTINGS_SCHEMA['worksheets'])
        with self.assertRaises(TypeError):
            _validate_worksheets(dict(WORKSHEETS, cars=1), SETTINGS_SCHEMA['worksheets'])


class RealTemplateSmokeTest(BaseTestCase):
    def test_templates_exist(self):
        self.assertTrue(lib.settings.settings_template.exists())
        self.assertTrue(lib.settings.client_secret_template.exists())

    def test_template_is_valid(self):
        with lib.settings.settings_template.open('r', encoding='utf-8') as f:
            data = json.load(f)
        lib.settings.validate_settings_data(data)

    def test_paths_live_under_root(self):
        for path in (lib.settings.settings_path, lib.settings.client_secret_path, lib.settings.db_path,
                     lib.settings.creds_path, lib.settings.session_path):
            self.assertTrue(str(path).startswith(self.root), path)
        self.assertTrue(lib.settings.settings_path.exists())
        self.assertTrue(lib.settings.auth_dir.is_dir())


class SettingsAPIBehaviour(BaseTestCase):

    def setUp(self):
        super().setUp()
        write_json(lib.settings.settings_path, minimal_settings())
        write_json(lib.settings.client_secret_path, DUMMY_SECRET)
        lib.settings.init_data()

    def test_loaded(self):
        self.assertEqual(lib.settings.get_section('spreadsheet'), {'id': 'dummy'})
        self.assertEqual(lib.settings.worksheet('planned_expenses'), 'Planned')
        self.assertTrue(lib.settings.sync_enabled('tag_links'))
        self.assertFalse(lib.settings.sync_enabled('planned_expenses'))
        self.assertFalse(lib.settings.sync_enabled('unknown'))

    def test_set_section_persists_and_signals(self):
        changed = []

        def _slot(name: str) -> None:
            changed.append(name)

        signals.configSectionChanged.connect(_slot)
        try:
            lib.settings.set_section('spreadsheet', {'id': 'abc'})
        finally:
            signals.configSectionChanged.disconnect(_slot)

        self.assertEqual(changed, ['spreadsheet'])
        self.assertEqual(SettingsAPI(root=self.root).get_section('spreadsheet'), {'id': 'abc'})

    def test_set_section_invalid_value_rollback(self):
        with self.assertRaises(TypeError):
            lib.settings.set_section('remote', {'timeout': 'slow', 'num_retries': 1})
        self.assertEqual(lib.settings.get_section('remote'), {'timeout': 10, 'num_retries': 0})

    def test_set_section_unknown(self):
        with self.assertRaises(ValueError):
            lib.settings.set_section('nope', {})

    def test_get_section_returns_copy(self):
        section = lib.settings.get_section('sync')
        section['tag_links'] = False
        self.assertTrue(lib.settings.sync_enabled('tag_links'))

    def test_revert_section(self):
        lib.settings.revert_section('worksheets')
        self.assertEqual(lib.settings.worksheet('reminders'), 'MaintenanceReminders')
        on_disk = json.loads(lib.settings.settings_path.read_text(encoding='utf-8'))
        self.assertEqual(on_disk['worksheets']['reminders'], 'MaintenanceReminders')
        self.assertEqual(on_disk['spreadsheet'], {'id': 'dummy'})

    def test_save_section_unknown(self):
        with self.assertRaises(ValueError):
            lib.settings.save_section('nope')

    def test_invalid_file_raises(self):
        data = minimal_settings()
        del data['sync']
        write_json(lib.settings.settings_path, data)
        with self.assertRaises(status.SettingsInvalidException):
            lib.settings.load_settings()

    def test_missing_file_raises(self):
        lib.settings.settings_path.unlink()
        with self.assertRaises(status.SettingsNotFoundException):
            lib.settings.load_settings()

    def test_validate_client_secret(self):
        self.assertEqual(lib.settings.validate_client_secret(), 'installed')

    def test_validate_client_secret_missing_section(self):
        with self.assertRaises(status.ClientSecretInvalidException):
            lib.settings.validate_client_secret({'other': {}})

    def test_validate_client_secret_missing_fields(self):
        secret = copy.deepcopy(DUMMY_SECRET)
        secret['installed']['client_id'] = ''
        with self.assertRaises(status.ClientSecretInvalidException):
            lib.settings.validate_client_secret(secret)

    def test_invalid_client_secret_json(self):
        lib.settings.client_secret_path.write_text('{', encoding='utf-8')
        with self.assertRaises(status.ClientSecretInvalidException):
            lib.settings.load_client_secret()

    def test_client_secret_revert(self):
        lib.settings.revert_section('client_secret')
        self.assertEqual(lib.settings.get_section('client_secret')['installed']['client_id'], '')
