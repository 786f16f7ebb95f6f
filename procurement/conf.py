"""Engine settings with defaults; override through ``settings.PROCUREMENT_ENGINE``"""
from django.conf import settings
from django.utils.module_loading import import_string

DEFAULTS = {
    'LOCK_TIMEOUT': 10.0,
    'STATEMENT_TIMEOUT': 20.0,
    'MANAGER_ROLE': 'PROCUREMENT_MANAGER',
    'MAX_STANDBY_RANK': 3,
    'SCORE_SCALE_MAX': 100,
    'NOTIFIER': 'procurement.collaborators.InAppNotifier',
    'ACCESS_POLICY': 'procurement.collaborators.RoleAccessPolicy',
}


def engine_setting(name):
    overrides = getattr(settings, 'PROCUREMENT_ENGINE', {}) or {}
    return overrides.get(name, DEFAULTS[name])


def get_notifier():
    return import_string(engine_setting('NOTIFIER'))()


def get_access_policy():
    return import_string(engine_setting('ACCESS_POLICY'))()
