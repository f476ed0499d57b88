from os import environ

import yaml
from dotenv import find_dotenv
from pydantic import ValidationError

from reminder_sync.helpers.config_models.root import RootModel

CONFIG_ENV = "CONFIG_JSON"
CONFIG_FILE_ENV = "CONFIG_FILE"


def load_config() -> RootModel:
    """
    Load the service configuration.

    Sources, the first found wins:
    1. JSON in the `CONFIG_JSON` environment variable
    2. YAML file named by the `CONFIG_FILE` environment variable, `config.yaml` by default, searched from the working directory up to the root

    Environment variables override the loaded values (see `RootModel`).
    """
    if CONFIG_ENV in environ:
        config = RootModel.model_validate_json(environ[CONFIG_ENV])
        print(f'Config loaded from env "{CONFIG_ENV}"')  # noqa: T201
        return config

    file_name = environ.get(CONFIG_FILE_ENV, "config.yaml")
    print(f'Cannot find env "{CONFIG_ENV}", trying to load from file "{file_name}"')  # noqa: T201
    path = find_dotenv(
        filename=file_name,
        usecwd=True,
    )
    if not path:
        raise ValueError(f'Cannot find config file "{file_name}"')

    with open(
        encoding="utf-8",
        file=path,
    ) as f:
        # Empty file is an empty config, defaults may be enough
        config = RootModel.model_validate(yaml.safe_load(f) or {})
        print(f'Config loaded from file "{path}"')  # noqa: T201
        return config


def _format_errors(e: ValidationError) -> str:
    err = "Config values are not valid:"
    for i, error in enumerate(e.errors()):
        err += f"\n{i + 1}. At {'.'.join(str(loc) for loc in error['loc'])}: {error['msg']} (input value: {error['input']})"
    return err


try:
    CONFIG = load_config()
except ValidationError as e:
    raise ValueError(_format_errors(e)) from e
