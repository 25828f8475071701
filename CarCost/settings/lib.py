"""Settings library for the sync configuration.

Provides:
    - Schema validation for settings.json (spreadsheet, worksheets, remote, sync sections).
    - Loading, saving, reverting and managing application settings.
    - Validation of the Google OAuth client_secret.json.
    - The application paths: settings, client secret, stored credentials, session and database.
"""

import json
import logging
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'CarCost'

WORKSHEET_KEYS: List[str] = ['cars', 'expenses', 'reminders', 'tags', 'tag_links', 'planned_expenses']

SETTINGS_SCHEMA: Dict[str, Any] = {
    'spreadsheet': {
        'type': dict,
        'required': True,
        'item_schema': {
            'id': {'type': str, 'required': True},
        }
    },
    'worksheets': {
        'type': dict,
        'required': True,
        'required_keys': WORKSHEET_KEYS,
        'value_type': str,
    },
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'timeout': {'type': (int, float), 'required': True},
            'num_retries': {'type': int, 'required': True},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'tag_links': {'type': bool, 'required': True},
            'planned_expenses': {'type': bool, 'required': True},
        }
    },
}


def _validate_item_schema(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate a section made of named, typed fields.

    Raises:
        ValueError: If a required field is missing.
        TypeError: If a field has the wrong type.
    """
    logging.debug(f'Validating "{section_name}" section.')
    for field, field_specs in item_schema.items():
        if field_specs['required'] and field not in section:
            msg = f'Section "{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section:
            continue
        value = section[field]
        # bool is an int subclass
        if isinstance(value, bool) and bool not in _as_tuple(field_specs['type']):
            msg = f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, got bool.'
            logging.error(msg)
            raise TypeError(msg)
        if not isinstance(value, field_specs['type']):
            msg = (
                f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)


def _as_tuple(value) -> tuple:
    return value if isinstance(value, tuple) else (value,)


def _validate_worksheets(worksheets: Dict[str, Any], specs: Dict[str, Any]) -> None:
    """Validate the 'worksheets' section.

    Every entity family must name a worksheet, and two families may not share one.

    Raises:
        ValueError: If keys are missing, a name is empty or names are not unique.
        TypeError: If a worksheet name is not a string.
    """
    logging.debug('Validating "worksheets" section.')
    missing = [k for k in specs['required_keys'] if k not in worksheets]
    if missing:
        msg: str = f'worksheets is missing keys {missing}.'
        logging.error(msg)
        raise ValueError(msg)
    for key, val in worksheets.items():
        if not isinstance(val, specs['value_type']):
            msg = f'Worksheet name for "{key}" must be a string.'
            logging.error(msg)
            raise TypeError(msg)
        if not val.strip():
            msg = f'Worksheet name for "{key}" must not be empty.'
            logging.error(msg)
            raise ValueError(msg)
    names = [worksheets[k] for k in specs['required_keys']]
    if len(set(names)) != len(names):
        msg = f'Worksheet names must be unique, got {names}.'
        logging.error(msg)
        raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure default templates and directories exist.

    Args:
        root: Optional directory used instead of the Qt application data location.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        if root is None:
            QtCore.QCoreApplication.setApplicationName(app_name)
            QtCore.QCoreApplication.setOrganizationName('')
            logging.debug(f'Setting application name: {app_name}')

            p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
            app_data_dir = pathlib.Path(p)
        else:
            app_data_dir = pathlib.Path(root)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.client_secret_template: pathlib.Path = self.template_dir / 'client_secret.json.template'
        self.settings_template: pathlib.Path = self.template_dir / 'settings.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.client_secret_path: pathlib.Path = self.config_dir / 'client_secret.json'
        self.settings_path: pathlib.Path = self.config_dir / 'settings.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'creds.json'
        self.session_path: pathlib.Path = self.auth_dir / 'session.json'
        self.db_path: pathlib.Path = self.db_dir / 'carcost.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify templates exist and prepare configuration directories and files.

        Raises:
            FileNotFoundError: If the template directory or a template file is missing.
        """
        logging.debug(f'Verifying required directories and templates in {self.template_dir}')
        for path in (self.template_dir, self.client_secret_template, self.settings_template):
            if not path.exists():
                msg: str = f'Missing template: {path}'
                logging.error(msg)
                raise FileNotFoundError(msg)

        for directory in (self.config_dir, self.auth_dir, self.db_dir):
            if not directory.exists():
                logging.debug(f'Creating directory: {directory}')
                directory.mkdir(parents=True, exist_ok=True)

        # Ensure valid configs exist even if we haven't yet set them up
        if not self.client_secret_path.exists():
            logging.debug(f'Copying default client_secret from template to {self.client_secret_path}')
            shutil.copy(self.client_secret_template, self.client_secret_path)
        if not self.settings_path.exists():
            logging.debug(f'Copying default settings from template to {self.settings_path}')
            shutil.copy(self.settings_template, self.settings_path)

    def revert_settings_to_template(self) -> None:
        """Restore settings.json from the default template file."""
        logging.debug(f'Reverting settings to template: {self.settings_template}')
        shutil.copy(self.settings_template, self.settings_path)

    def revert_client_secret_to_template(self) -> None:
        """Restore client_secret.json from the default template file."""
        logging.debug(f'Reverting client_secret to template: {self.client_secret_template}')
        shutil.copy(self.client_secret_template, self.client_secret_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save settings.json sections and client_secret.json.
    """
    required_client_secret_keys: List[str] = ['client_id', 'project_id', 'client_secret', 'auth_uri', 'token_uri']

    def __init__(self, root: Optional[str] = None) -> None:
        super().__init__(root=root)

        self.settings_data: Dict[str, Any] = {k: {} for k in SETTINGS_SCHEMA}
        self.client_secret_data: Dict[str, Any] = {}

        self.init_data()

    def init_data(self) -> None:
        """Reload settings and client_secret data from disk."""
        self.load_settings()
        self.load_client_secret()

    def load_settings(self) -> Dict[str, Any]:
        """Load settings.json from disk and validate against schema.

        Raises:
            status.SettingsNotFoundException: If settings.json is missing.
            status.SettingsInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading settings from "{self.settings_path}"')
        if not self.settings_path.exists():
            raise status.SettingsNotFoundException(str(self.settings_path))

        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_settings_data(data)
        except (ValueError, TypeError) as ex:
            raise status.SettingsInvalidException(str(ex)) from ex

        self.settings_data = data
        return self.settings_data

    def load_client_secret(self) -> Dict[str, Any]:
        """Load client_secret.json from disk.

        The template ships with empty values, so the content is only validated
        when it is used for signing in.

        Raises:
            status.ClientSecretNotFoundException: If client_secret.json is missing.
            status.ClientSecretInvalidException: If the file is not valid JSON.
        """
        logging.debug(f'Loading client_secret from "{self.client_secret_path}"')
        if not self.client_secret_path.exists():
            raise status.ClientSecretNotFoundException(str(self.client_secret_path))
        try:
            with self.client_secret_path.open('r', encoding='utf-8') as f:
                self.client_secret_data = json.load(f)
        except json.JSONDecodeError as ex:
            raise status.ClientSecretInvalidException(str(ex)) from ex
        return self.client_secret_data

    def validate_client_secret(self, data: Optional[Dict[str, Any]] = None) -> str:
        """Validate that the client configuration contains required OAuth credentials.

        Args:
            data: Client secret data to validate. Defaults to the loaded client_secret_data.

        Returns:
            str: Section key used ('installed' or 'web').

        Raises:
            status.ClientSecretInvalidException: If no valid section exists or required fields are missing.
        """
        if data is None:
            data = self.client_secret_data

        key = next((k for k in ('installed', 'web') if k in data), None)
        if not key:
            raise status.ClientSecretInvalidException('Missing "installed" or "web" section in client_secret.')

        config_section: Dict[str, Any] = data[key]
        missing: List[str] = [k for k in self.required_client_secret_keys if not config_section.get(k)]
        if missing:
            raise status.ClientSecretInvalidException(
                f'Missing required fields in the \'{key}\' section: {missing}.'
            )
        return key

    def validate_settings_data(self, data: Optional[Dict[str, Any]] = None) -> None:
        """Validate settings data against SETTINGS_SCHEMA.

        Raises:
            ValueError: If a required section or field is missing.
            TypeError: If a section or field has the wrong type.
        """
        if data is None:
            data = self.settings_data
        if not data:
            raise ValueError('Settings data is empty.')

        logging.debug('Validating settings data against schema.')
        for field, specs in SETTINGS_SCHEMA.items():
            if specs.get('required') and field not in data:
                raise ValueError(f'Missing required section: {field}')

            if not isinstance(data[field], specs['type']):
                raise TypeError(f'Section "{field}" must be {specs["type"]}, got {type(data[field])}.')

            if field == 'worksheets':
                _validate_worksheets(data[field], specs)
            else:
                _validate_item_schema(field, data[field], specs['item_schema'])

        logging.debug('Settings data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a settings or client_secret section.

        Raises:
            KeyError: If section_name is unknown.
        """
        if section_name == 'client_secret':
            return self.client_secret_data.copy()
        return self.settings_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a section.

        Raises:
            ValueError: If section_name is unknown or the new data is invalid.
            TypeError: If the new data has the wrong types.
        """
        from ..core.signals import signals

        if section_name == 'client_secret':
            logging.debug('Setting entire client_secret data.')
            self.validate_client_secret(new_data)
            self.client_secret_data = new_data
            self.save_section('client_secret')
            signals.configSectionChanged.emit(section_name)
            return

        if section_name not in self.settings_data:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.settings_data[section_name].copy()

        self.settings_data[section_name] = new_data
        try:
            self.validate_settings_data()
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.settings_data[section_name] = current_section_data
            raise

        self.save_section(section_name)
        signals.configSectionChanged.emit(section_name)

    def revert_section(self, section_name: str) -> None:
        """Revert a section to its template default and save it."""
        from ..core.signals import signals

        if section_name == 'client_secret':
            self.revert_client_secret_to_template()
            self.load_client_secret()
            signals.configSectionChanged.emit(section_name)
            return

        if section_name not in self.settings_data:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        self.settings_data[section_name] = template_data[section_name]
        self.save_section(section_name)
        signals.configSectionChanged.emit(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single section to its file."""
        if section_name == 'client_secret':
            logging.debug(f'Saving client_secret to "{self.client_secret_path}"')
            with self.client_secret_path.open('w', encoding='utf-8') as f:
                json.dump(self.client_secret_data, f, indent=4, ensure_ascii=False)
            return

        if section_name not in self.settings_data:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.settings_data[section_name]

        logging.debug(f'Saving section "{section_name}" to "{self.settings_path}"')
        with self.settings_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)

    def worksheet(self, key: str) -> str:
        """Returns the worksheet name configured for an entity family."""
        return self.settings_data['worksheets'][key]

    def sync_enabled(self, key: str) -> bool:
        """Returns whether an optional entity family takes part in sync."""
        return bool(self.settings_data['sync'].get(key, False))


settings: SettingsAPI = SettingsAPI()
