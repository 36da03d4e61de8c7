"""后端类型与连接配置。

本模块把"后端类型"与"连接参数"集中定义：

- ProviderType：封闭枚举，工厂按它选择适配器。
- ProviderConfig：每种后端的默认地址与端点路径。
- ProviderConnection：用户配置的一条具体连接（地址、密钥）。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional


class ProviderType(str, Enum):
    OLLAMA = "ollama"
    LITELLM = "litellm"


@dataclass(frozen=True)
class ProviderConfig:
    """某种后端协议的静态配置。"""

    provider_type: ProviderType
    display_name: str
    default_base_url: str
    chat_path: str
    models_path: str


OLLAMA_CONFIG = ProviderConfig(
    provider_type=ProviderType.OLLAMA,
    display_name="Ollama",
    default_base_url="http://localhost:11434",
    chat_path="/api/chat",
    models_path="/api/tags",
)

# LiteLLM 网关，请求/响应与 OpenAI chat/completions 兼容
LITELLM_CONFIG = ProviderConfig(
    provider_type=ProviderType.LITELLM,
    display_name="LiteLLM",
    default_base_url="http://localhost:4000/v1",
    chat_path="/chat/completions",
    models_path="/models",
)


PROVIDER_REGISTRY: Mapping[ProviderType, ProviderConfig] = {
    ProviderType.OLLAMA: OLLAMA_CONFIG,
    ProviderType.LITELLM: LITELLM_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.value == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


@dataclass(frozen=True)
class ProviderConnection:
    """一条已配置的后端连接。"""

    provider_type: ProviderType
    base_url: str
    api_key: Optional[str] = None
    name: Optional[str] = None

    @property
    def config(self) -> ProviderConfig:
        return PROVIDER_REGISTRY[self.provider_type]

    @property
    def label(self) -> str:
        return self.name or f"{self.config.display_name} ({self.base_url})"
