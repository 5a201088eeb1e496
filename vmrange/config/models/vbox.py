from typing import Optional

from pydantic import Field

from vmrange.container import MetadataContainer


class VirtualBoxConfig(MetadataContainer):
    manage_command: str = 'VBoxManage'
    username: str = 'root'
    password: Optional[str] = None
    import_dir: Optional[str] = None
    max_adapters: int = Field(default=8, ge=1)
