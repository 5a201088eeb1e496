from typing import Optional

from vmrange.container import MetadataContainer


class AnsibleConfig(MetadataContainer):
    playbook_command: str = 'ansible-playbook'
    adhoc_command: str = 'ansible'
    extra_args: Optional[str] = None
