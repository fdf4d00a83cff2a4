"""
Interactive configuration for LDAP Mailchimp Sync.

Asks for the directory server and the three credentials, then writes them to
the configuration file, keeping any other settings already present there.
"""

import os
import getpass
import logging
from collections import namedtuple
from typing import Callable, Dict, Any, List, Optional

import yaml

from ldap_mailchimp_sync.config import default_config_path

logger = logging.getLogger(__name__)

# validator returns an error message, or None when the answer is acceptable
Question = namedtuple('Question', ['prompt', 'validator', 'field', 'secret'])


def _required(label: str) -> Callable[[str], Optional[str]]:
    def validate(answer: str) -> Optional[str]:
        if not answer.strip():
            return f"{label} is required"
        return None
    return validate


def _validate_server_url(answer: str) -> Optional[str]:
    if not answer.lower().startswith(('ldap://', 'ldaps://')):
        return "Server URL must start with ldap:// or ldaps://"
    return None


def _validate_api_key(answer: str) -> Optional[str]:
    key, _, datacenter = answer.strip().rpartition('-')
    if not key or not datacenter:
        return "Mailchimp API key must end with its datacenter, e.g. '<key>-us6'"
    return None


QUESTIONS = [
    Question('LDAP server URL', _validate_server_url, 'directory.server_url', False),
    Question('Directory key id (bind DN)', _required('Directory key id'), 'directory.key_id', False),
    Question('Directory key secret (bind password)', _required('Directory key secret'), 'directory.key_secret', True),
    Question('Mailchimp API key', _validate_api_key, 'mailchimp.api_key', True),
]


def _get_nested(config: Dict[str, Any], key_path: str) -> Any:
    current = config
    for key in key_path.split('.'):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _set_nested(config: Dict[str, Any], key_path: str, value: Any) -> None:
    keys = key_path.split('.')
    current = config
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def collect_answers(questions: List[Question], defaults: Optional[Dict[str, Any]] = None,
                    input_func: Callable[[str], str] = input,
                    secret_input_func: Callable[[str], str] = getpass.getpass,
                    output: Callable[[str], None] = print) -> Dict[str, str]:
    """
    Ask each question in order until it gets a valid answer.

    An empty answer keeps the value from ``defaults`` when there is one.

    Returns:
        Mapping of question field to answer
    """
    defaults = defaults or {}
    answers = {}
    for question in questions:
        current = defaults.get(question.field)
        if current and question.secret:
            prompt = f"{question.prompt} [****]: "
        elif current:
            prompt = f"{question.prompt} [{current}]: "
        else:
            prompt = f"{question.prompt}: "

        while True:
            ask = secret_input_func if question.secret else input_func
            answer = ask(prompt).strip()
            if not answer and current:
                answer = current
            error = question.validator(answer)
            if error is None:
                answers[question.field] = answer
                break
            output(error)
    return answers


def read_existing(config_path: str) -> Dict[str, Any]:
    """Load the current config file for editing; a missing or unreadable file starts empty."""
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            existing = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        logger.warning(f"Existing config {config_path} is not valid YAML and will be replaced: {e}")
        return {}
    return existing if isinstance(existing, dict) else {}


def write_config(config: Dict[str, Any], config_path: str) -> None:
    """Write the config file readable by the owner only."""
    config_dir = os.path.dirname(config_path)
    if config_dir:
        os.makedirs(config_dir, mode=0o700, exist_ok=True)
    fd = os.open(config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)
    os.chmod(config_path, 0o600)


def run_configure(config_path: Optional[str] = None,
                  input_func: Callable[[str], str] = input,
                  secret_input_func: Callable[[str], str] = getpass.getpass,
                  output: Callable[[str], None] = print) -> str:
    """
    Run the interactive configuration and save the answers.

    Returns:
        Path of the written configuration file
    """
    config_path = os.path.expanduser(config_path) if config_path else default_config_path()
    config = read_existing(config_path)
    defaults = {question.field: _get_nested(config, question.field) for question in QUESTIONS}

    answers = collect_answers(QUESTIONS, defaults, input_func, secret_input_func, output)
    for field, value in answers.items():
        _set_nested(config, field, value)

    write_config(config, config_path)
    logger.info(f"Configuration written to {config_path}")
    output(f"Configuration saved to {config_path}")
    return config_path
