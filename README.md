# limacfg

`limacfg` reads the YAML file that describes a virtual machine instance
(`lima.yaml`), merges it with an optional defaults file and an override file,
fills in every setting that was left out, and checks the result. It also
models the host network configuration (`networks.yaml`) used for shared,
bridged, host-only and user-mode (`user-v2`) networks, and builds the command
lines and sudoers entries for the network daemons.

It is a library; it installs no commands.

## Instance configuration: `limacfg.limayaml`

- `schema.LimaYAML` models the whole document: images (with optional kernel
  and initrd), CPU types, CPUs, memory, disk, additional disks, mounts and
  their sshfs/9p options, mount type, SSH, firmware, audio, video and VNC,
  provisioning scripts, containerd, probes, port forwards, copy-to-host rules,
  networks, environment, DNS, host resolver, proxy propagation, CA
  certificates and Rosetta. `LimaYAML.from_dict(data, strict)` builds it from
  parsed YAML (unknown keys raise `SchemaError` when `strict`), and
  `to_dict()` writes it back, leaving out empty optional values.
- `load.load(data, file_path, default_path, override_path, socket_dir)`
  parses the document, reads the defaults and override files if they exist,
  and completes the result with `fill_default`. It does not validate.
  `load.unmarshal_yaml(data, comment)` parses a single document: malformed
  YAML and duplicate keys raise `LoadError`; unknown fields are accepted with a
  deprecation warning.
- `defaults.fill_default(y, d, o, file_path, socket_dir)` completes `y` in
  place. Scalars come from the override, then the file, then the defaults,
  then a built-in value (qemu, the host architecture, 4 CPUs, `4GiB` memory,
  `100GiB` disk, reverse-sshfs mounts, ...). Maps are merged with the override
  winning. Lists are joined override first; mounts and networks are joined
  defaults first and merged by location and interface name; DNS is taken whole
  from the highest-priority source that sets it; CA files and certificates are
  joined without duplicates. Networks without a MAC address get one derived
  from the machine ID and the file path; unnamed interfaces become `lima0`,
  `lima1`, ... `d` and `o` are not modified.
  `defaults.first_usernet_index(y, networks_config)` returns the index of the
  first user-mode network, or -1.
- `validate.validate(y, warn, networks_config)` raises `ValidationError` for
  the first problem found, naming the offending field: architectures, images
  and digests, CPU types, sizes, mount locations, ports and port ranges,
  sockets, provisioning and probe modes, copy-to-host paths, DNS versus host
  resolver, and network definitions. Networks that name a lima network are
  looked up in `networks_config`. With `warn`, experimental settings (9p, vz,
  riscv64, VNC display) are logged. `validate.validate_port(field, port)`
  checks a single port.
- `rules` holds the building blocks: `resolve_arch`, `resolve_vm_type`,
  `new_arch`, `new_vm_type`, `host_arch`, `is_native_arch`, `is_accel_os`,
  `has_host_cpu`, `has_max_cpu`, `mac_address`, `default_containerd_archives`,
  `fill_port_forward_defaults`, `fill_copy_to_host_defaults`, and the template
  expansion used for socket and file paths: `expand_guest_template` fills
  `{{.Home}}`, `{{.UID}}` and `{{.User}}`, and `expand_host_template` fills
  `{{.Dir}}`, `{{.Home}}`, `{{.Name}}`, `{{.UID}}`, `{{.User}}` and the
  deprecated `{{.Instance}}` and `{{.LimaHome}}`.

## Host networks: `limacfg.networks`

- `netmodel.NetworksConfig.from_dict(data)` reads `networks.yaml` contents
  strictly. A config can `check` and `usernet` a network name, report
  `daemon_path` and `is_daemon_installed` for `socket_vmnet`, `vde_vmnet` and
  `vde_switch`, give the `sock`, `vde_sock`, `pid_file` and `log_file` paths,
  the `user` a daemon runs as, and the `mkdir_cmd`, `start_cmd` and `stop_cmd`
  command lines. Errors are `NetworkError`.
- `netconfig.NetworksStore(path, default_text)` loads a `networks.yaml` once,
  writing `default_text` to it first when the file does not exist; the first
  outcome, success or error, is kept. `netconfig.load_config(path)`,
  `config_file(config_dir)` and `find_socket_vmnet()` are also available.
- `sudoers.sudoers(config)` renders the sudoers fragment for every configured
  network and installed daemon. `sudoers.verify_sudo_access(config,
  sudoers_file)` checks that the file matches, or that `sudo` works without a
  password; it runs `sudo` to find out.
- `netvalidate.validate_config(config)` checks that each configured path and
  all its parents are absolute, free of spaces, not symlinks, owned by an
  admin and not writable by untrusted groups or others. These checks are only
  meaningful on macOS and raise `NetworkError` elsewhere.
- `usernet` gives the socket and PID file paths of user-mode networks
  (`sock`, `sock_with_directory`, `pid_file`) and reads search domains from a
  `resolv.conf` file (`resolve_search_domain`, `search_domains`).

## Host helpers

- `limacfg.osutil.user`: `lima_user(warn)` returns the current account adapted
  to Linux naming rules (invalid names become `lima`); `lookup_user` and
  `lookup_group` are cached lookups.
- `limacfg.osutil.machineid`: `machine_id()` reads `/etc/machine-id` (or the
  IOPlatformUUID on macOS), falling back to the host name;
  `parse_io_platform_uuid(data)` parses `ioreg` output.
- `limacfg.osutil.system`: `sys_stat`, `sys_kill`,
  `is_being_rosetta_translated`, and on macOS `dns_addresses()` and
  `proxy_settings()` read from `system_profiler`; `proxy_url` builds a proxy
  URL.
- `limacfg.localpathutil.expand(path)` expands `~` and `~/...` and makes the
  path absolute.
- `limacfg.lockutil.dir_lock(directory)` is a context manager holding an
  exclusive lock on a directory; `with_dir_lock(directory, fn)` calls `fn`
  under it.
- `limacfg.logrusutil.propagate_json(logger, line, header, begin)` re-emits a
  JSON log line from another process on a `logging.Logger`.

## Example

```python
from pathlib import Path

from limacfg.limayaml.load import load
from limacfg.limayaml.validate import validate, ValidationError

instance_dir = Path.home() / ".lima" / "default"
config_dir = Path.home() / ".lima" / "_config"

data = (instance_dir / "lima.yaml").read_bytes()
y = load(
    data,
    str(instance_dir / "lima.yaml"),
    str(config_dir / "default.yaml"),
    str(config_dir / "override.yaml"),
    "sock",
)

print(y.arch, y.cpus, y.memory, y.disk)
for rule in y.port_forwards:
    print(rule.guest_port_range, "->", rule.host_port_range)

try:
    validate(y, True, None)
except ValidationError as err:
    print("invalid configuration:", err)
```

Working with the host network configuration:

```python
from limacfg.networks.netmodel import NetworksConfig

config = NetworksConfig.from_dict({
    "paths": {
        "socketVMNet": "/opt/socket_vmnet/bin/socket_vmnet",
        "varRun": "/private/var/run/lima",
    },
    "group": "everyone",
    "networks": {
        "shared": {
            "mode": "shared",
            "gateway": "192.168.105.1",
            "dhcpEnd": "192.168.105.254",
            "netmask": "255.255.255.0",
        },
    },
})

config.check("shared")
print(config.sock("shared"))          # /private/var/run/lima/socket_vmnet.shared
print(config.stop_cmd("shared", "socket_vmnet"))
```

## What it does not do

`limacfg` works with configuration only. It does not create, start or stop
virtual machines, does not start or stop network daemons or the user-mode
network service (it only builds their command lines and file paths), keeps no
store of instances, and has no command-line interface. The defaults and
override file locations and the socket directory name are passed in by the
caller.

## Requirements

Python 3.10 or later and PyYAML. Network path ownership checks and the proxy
and DNS settings are available on macOS only; the instance configuration works
on any POSIX host.