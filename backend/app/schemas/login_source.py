"""Configuration variants for external authenticators, keyed by their ``type`` tag."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class LDAPConfig(BaseModel):
    type: Literal["ldap"] = "ldap"
    host: str
    port: int = 389
    security_protocol: Literal["unencrypted", "ldaps", "starttls"] = "unencrypted"
    skip_verify: bool = False
    bind_dn: str = ""
    bind_password: str = ""
    user_base: str = ""
    filter: str = ""
    attribute_username: str = ""
    attribute_mail: str = ""
    admin_filter: str = ""


class DirectLDAPConfig(LDAPConfig):
    type: Literal["dldap"] = "dldap"
    user_dn: str = ""


class SMTPConfig(BaseModel):
    type: Literal["smtp"] = "smtp"
    auth: Literal["PLAIN", "LOGIN", "CRAM-MD5"] = "PLAIN"
    host: str
    port: int = 25
    allowed_domains: str = ""
    tls: bool = True
    skip_verify: bool = False


class PAMConfig(BaseModel):
    type: Literal["pam"] = "pam"
    service_name: str = "gitforge"


class OAuth2Config(BaseModel):
    type: Literal["oauth2"] = "oauth2"
    provider: str
    client_id: str
    client_secret: str
    open_id_connect_auto_discovery_url: str = ""


LoginSourceConfig = Annotated[
    Union[LDAPConfig, DirectLDAPConfig, SMTPConfig, PAMConfig, OAuth2Config],
    Field(discriminator="type"),
]

login_source_config_adapter: TypeAdapter[LoginSourceConfig] = TypeAdapter(LoginSourceConfig)


def parse_login_source_config(raw: str) -> LoginSourceConfig:
    return login_source_config_adapter.validate_json(raw)


def dump_login_source_config(cfg: LoginSourceConfig) -> str:
    return login_source_config_adapter.dump_json(cfg).decode()
