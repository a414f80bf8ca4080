"""Follow-up actions suggested after a successful deploy."""

import re

from manifest import TopicSubscription

APP_RUNNER_CONSOLE_URL = 'https://console.aws.amazon.com/apprunner/home'
QUEUE_URI_VAR = 'COPILOT_QUEUE_URI'
TOPIC_QUEUE_URIS_VAR = 'COPILOT_TOPIC_QUEUE_URIS'

_NON_ALNUM = re.compile(r'[^a-zA-Z0-9]')


def strip_non_alphanumeric(value: str) -> str:
    return _NON_ALNUM.sub('', value)


def rdws_actions(alias: str) -> list[str]:
    if not alias:
        return []
    return [
        f"The validation process for https://{alias} can take more than 15 minutes.\n"
        f"    Please visit {APP_RUNNER_CONSOLE_URL} to check the validation status."
    ]


def topic_queue_names(subscriptions: list[TopicSubscription]) -> str:
    """Names of the per-topic queue variables, comma separated.

    Only subscriptions with a dedicated queue get one: ``<Svc><Topic>EventsQueue``.
    """
    names = []
    for sub in subscriptions:
        if not sub.queue:
            continue
        svc = strip_non_alphanumeric(sub.service)
        topic = strip_non_alphanumeric(sub.name)
        names.append(f'{svc}{topic[:1].upper()}{topic[1:].lower()}EventsQueue')
    return ', '.join(names)


def worker_actions(subscriptions: list[TopicSubscription]) -> list[str]:
    if not subscriptions:
        return []
    code = f'const eventsQueueURI = process.env.{QUEUE_URI_VAR}'
    actions = [
        f'Update worker service code to leverage the injected environment variable "{QUEUE_URI_VAR}".\n'
        f'    In JavaScript you can write `{code}`.'
    ]
    names = topic_queue_names(subscriptions)
    if names:
        code = f'const {{{names}}} = JSON.parse(process.env.{TOPIC_QUEUE_URIS_VAR})'
        actions.append(f'You can retrieve topic-specific queues by writing\n    `{code}`.')
    return actions
