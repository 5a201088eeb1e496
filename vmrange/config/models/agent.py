from vmrange.container import MetadataContainer


class AgentConfig(MetadataContainer):
    """
    Remote agent settings.

    .. code-block:: yaml

     scenario-name: red-vs-blue
     setup-network: setup
     staging-root: /mnt
     settle-delay: 5
     guest-ready-timeout: 600
     guest-ready-tick: 5
    """

    scenario_name: str = 'scenario'
    setup_network: str = 'setup'
    staging_root: str = '/mnt'
    settle_delay: float = 5.0
    guest_ready_timeout: float = 600.0
    guest_ready_tick: float = 5.0
