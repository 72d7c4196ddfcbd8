import tomllib
import toml
from auth import generate_token

DEFAULT_CONTROL_PORT=4777
DEFAULT_EXPOSED_PORT=5666
DEFAULT_GRACE_PERIOD=30
DEFAULT_AUTH_TIMEOUT=10
DEFAULT_MAX_ATTEMPTS=5
DEFAULT_RETRY_DELAY=10
DEFAULT_CONNECT_TIMEOUT=10
LOG_LEVELS=("debug","info","warning","error","critical")

class ConfigError(ValueError):
    pass

def load_toml(config_path):
    try:
        with open(config_path,"rb") as f:
            return tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e

def parse_port(value,name):
    if isinstance(value,bool):
        raise ConfigError(f"Invalid {name}: {value!r}")
    try:
        port=int(value)
    except (TypeError,ValueError):
        raise ConfigError(f"Invalid {name}: {value!r}") from None
    if not 0<port<65536:
        raise ConfigError(f"Invalid {name}: {port} is outside 1-65535")
    return port

def parse_duration(value,name):
    try:
        duration=float(value)
    except (TypeError,ValueError):
        raise ConfigError(f"Invalid {name}: {value!r}") from None
    if duration<0:
        raise ConfigError(f"Invalid {name}: must not be negative")
    return duration

def parse_count(value,name):
    try:
        count=int(value)
    except (TypeError,ValueError):
        raise ConfigError(f"Invalid {name}: {value!r}") from None
    if count<1:
        raise ConfigError(f"Invalid {name}: must be at least 1")
    return count

def parse_target(target):
    host,sep,port=str(target).rpartition(":")
    host=host.strip("[]")
    if not sep or not host:
        raise ConfigError(f"Invalid target {target!r}, expected host:port (e.g. localhost:3389)")
    return host,parse_port(port,"target port")

def parse_log_level(level):
    level=str(level).lower()
    if level not in LOG_LEVELS:
        raise ConfigError(f"Invalid log level {level!r}, expected one of {', '.join(LOG_LEVELS)}")
    return level

class ServerConfig:
    role="server"

    def __init__(self,control_port=DEFAULT_CONTROL_PORT,exposed_port=DEFAULT_EXPOSED_PORT,secret=None,grace_period=DEFAULT_GRACE_PERIOD,control_host="0.0.0.0",exposed_host="0.0.0.0",auth_timeout=DEFAULT_AUTH_TIMEOUT,log_level="info",log_file=""):
        self.control_host=control_host
        self.control_port=parse_port(control_port,"control port")
        self.exposed_host=exposed_host
        self.exposed_port=parse_port(exposed_port,"exposed port")
        self.secret=secret or None
        self.grace_period=parse_duration(grace_period,"grace period")
        self.auth_timeout=parse_duration(auth_timeout,"auth timeout")
        self.log_level=parse_log_level(log_level)
        self.log_file=log_file or ""

    @classmethod
    def from_toml(cls,config):
        server=config.get("server",{})
        return cls(
            control_port=server.get("control_port",DEFAULT_CONTROL_PORT),
            exposed_port=server.get("exposed_port",DEFAULT_EXPOSED_PORT),
            secret=config.get("auth",{}).get("secret"),
            grace_period=server.get("grace_period",DEFAULT_GRACE_PERIOD),
            control_host=server.get("control_host","0.0.0.0"),
            exposed_host=server.get("exposed_host","0.0.0.0"),
            auth_timeout=server.get("auth_timeout",DEFAULT_AUTH_TIMEOUT),
            log_level=config.get("logging",{}).get("level","info"),
            log_file=config.get("logging",{}).get("file",""))

class ClientConfig:
    role="client"

    def __init__(self,server,target,control_port=DEFAULT_CONTROL_PORT,secret=None,max_attempts=DEFAULT_MAX_ATTEMPTS,retry_delay=DEFAULT_RETRY_DELAY,reset_on_success=False,connect_timeout=DEFAULT_CONNECT_TIMEOUT,log_level="info",log_file=""):
        if not server:
            raise ConfigError("A server address is required in client mode")
        self.server=server
        self.control_port=parse_port(control_port,"control port")
        self.target=target
        self.target_host,self.target_port=parse_target(target)
        self.secret=secret or None
        self.max_attempts=parse_count(max_attempts,"max attempts")
        self.retry_delay=parse_duration(retry_delay,"retry delay")
        self.reset_on_success=bool(reset_on_success)
        self.connect_timeout=parse_duration(connect_timeout,"connect timeout")
        self.log_level=parse_log_level(log_level)
        self.log_file=log_file or ""

    @classmethod
    def from_toml(cls,config):
        client=config.get("client",{})
        reconnect=config.get("reconnect",{})
        if "target" not in client:
            raise ConfigError("[client] target is required")
        return cls(
            server=client.get("server"),
            target=client["target"],
            control_port=client.get("control_port",DEFAULT_CONTROL_PORT),
            secret=config.get("auth",{}).get("secret"),
            max_attempts=reconnect.get("max_attempts",DEFAULT_MAX_ATTEMPTS),
            retry_delay=reconnect.get("delay",DEFAULT_RETRY_DELAY),
            reset_on_success=reconnect.get("reset_on_success",False),
            connect_timeout=client.get("connect_timeout",DEFAULT_CONNECT_TIMEOUT),
            log_level=config.get("logging",{}).get("level","info"),
            log_file=config.get("logging",{}).get("file",""))

def load_config(config_path):
    config=load_toml(config_path)
    if "server" in config and "client" in config:
        raise ConfigError(f"{config_path} has both [server] and [client] tables")
    if "server" in config:
        return ServerConfig.from_toml(config)
    if "client" in config:
        return ClientConfig.from_toml(config)
    raise ConfigError(f"{config_path} needs a [server] or [client] table")

def generate_config(role,secret=None):
    secret=secret or generate_token()
    logging_table={"level":"info","file":""}
    if role=="server":
        return {
            "server":{"control_host":"0.0.0.0","control_port":DEFAULT_CONTROL_PORT,"exposed_host":"0.0.0.0","exposed_port":DEFAULT_EXPOSED_PORT,"grace_period":DEFAULT_GRACE_PERIOD},
            "auth":{"secret":secret},
            "logging":logging_table}
    if role=="client":
        return {
            "client":{"server":"127.0.0.1","control_port":DEFAULT_CONTROL_PORT,"target":"localhost:3389","connect_timeout":DEFAULT_CONNECT_TIMEOUT},
            "auth":{"secret":secret},
            "reconnect":{"max_attempts":DEFAULT_MAX_ATTEMPTS,"delay":DEFAULT_RETRY_DELAY,"reset_on_success":False},
            "logging":logging_table}
    raise ConfigError(f"Unknown role {role!r}")

def dumps_config(config):
    return toml.dumps(config)

def write_config(config,config_path):
    with open(config_path,"w") as f:
        toml.dump(config,f)
