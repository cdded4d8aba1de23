from __future__ import annotations

from dataclasses import dataclass, field

from .cli_shared import GlobalOpts
from .environment import Config, Context, load_config_for
from .fabric import Channel, FactoryProvider, ResourceManagement, default_factory_provider


@dataclass
class CommandContext:
    g: GlobalOpts
    factory_provider: FactoryProvider = default_factory_provider
    _config: Config | None = field(default=None, repr=False)

    def config(self) -> Config:
        if self._config is None:
            self._config = load_config_for(self.g)
        return self._config

    def context(self) -> Context:
        return self.config().get_current_context()

    def channel(self) -> Channel:
        return self.factory_provider(self.config()).channel()

    def res_mgmt(self) -> ResourceManagement:
        return self.factory_provider(self.config()).resource_management()


def build_command_context(g: GlobalOpts) -> CommandContext:
    return CommandContext(g=g)
