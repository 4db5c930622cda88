"""Remote shell script and manifest templates.

Scripts that run on the target host are rendered from Jinja2 templates so
that every interpolated value passes through ``shell_quote``.
"""

from __future__ import annotations

import shlex
from typing import Any

from jinja2 import Environment, StrictUndefined

from ezdeploy.models.deployment import CLUSTER_ISSUER_NAME

_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)
_env.filters["shell_quote"] = lambda value: shlex.quote(str(value))
_env.filters["sql_quote"] = lambda value: "'" + str(value).replace("'", "''") + "'"


def render(template: str, **context: Any) -> str:
    """Render one of the templates below with strict undefined handling."""
    return _env.from_string(template).render(**context)


SSH_CONFIG_BLOCK_TEMPLATE = """\

# Deploy key for {{ project }}
Host {{ alias }}
    HostName {{ git_host }}
    User git
    IdentityFile {{ key_path }}
    IdentitiesOnly yes
    StrictHostKeyChecking no
"""

# awk program dropping the block for ``host``: its Host stanza plus the
# blank lines and marker comment directly above it
SSH_CONFIG_FILTER = """\
/^[ \\t]*$/ || /^# Deploy key for / { held = held $0 "\\n"; next }
$1 == "Host" { skip = ($2 == host) }
!skip { printf "%s", held; print }
{ held = "" }
"""
_env.globals["ssh_config_filter"] = SSH_CONFIG_FILTER

# Replaces any previous block for the alias, then appends the new one
SSH_CONFIG_INSTALL_TEMPLATE = """\
set -e
mkdir -p ~/.ssh
chmod 700 ~/.ssh
touch ~/.ssh/config
awk -v host={{ alias | shell_quote }} {{ ssh_config_filter | shell_quote }} \\
  ~/.ssh/config > ~/.ssh/config.tmp
mv ~/.ssh/config.tmp ~/.ssh/config
cat >> ~/.ssh/config <<'EZDEPLOY_SSH_EOF'
{{ block }}EZDEPLOY_SSH_EOF
chmod 600 ~/.ssh/config
touch ~/.ssh/known_hosts
if ! ssh-keygen -F {{ git_host | shell_quote }} -f ~/.ssh/known_hosts >/dev/null 2>&1; then
  ssh-keyscan -H {{ git_host | shell_quote }} >> ~/.ssh/known_hosts 2>/dev/null
fi
"""

KEYGEN_TEMPLATE = """\
set -e
mkdir -p {{ keys_dir | shell_quote }}
chmod 700 {{ keys_dir | shell_quote }}
rm -f {{ key_path | shell_quote }} {{ (key_path ~ '.pub') | shell_quote }}
ssh-keygen -t rsa -b 4096 -f {{ key_path | shell_quote }} -N "" -C {{ comment | shell_quote }} >/dev/null
chmod 600 {{ key_path | shell_quote }}
cat {{ (key_path ~ '.pub') | shell_quote }}
"""

BASE_PACKAGES = (
    "curl",
    "wget",
    "gnupg",
    "lsb-release",
    "apt-transport-https",
    "ca-certificates",
    "software-properties-common",
    "netcat-openbsd",
)

DOCKER_PACKAGES = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
)

DOCKER_REPO_TEMPLATE = """\
set -e
rm -f /etc/apt/sources.list.d/docker.list /usr/share/keyrings/docker-archive-keyring.gpg
. /etc/os-release
ARCH=$(dpkg --print-architecture)
curl -fsSL "https://download.docker.com/linux/${ID}/gpg" \\
  | gpg --batch --yes --dearmor -o /usr/share/keyrings/docker-archive-keyring.gpg
echo "deb [arch=${ARCH} signed-by=/usr/share/keyrings/docker-archive-keyring.gpg] https://download.docker.com/linux/${ID} ${VERSION_CODENAME} stable" \\
  > /etc/apt/sources.list.d/docker.list
"""

DOCKER_ENABLE_TEMPLATE = """\
set -e
usermod -aG docker {{ user | shell_quote }} || true
systemctl start docker
systemctl enable docker
"""

MICROK8S_INSTALL_TEMPLATE = """\
set -e
snap install microk8s --classic
usermod -a -G microk8s {{ user | shell_quote }} || true
microk8s status --wait-ready --timeout {{ timeout }}
"""

HELM_REPO_TEMPLATE = """\
set -e
curl -fsSL https://baltocdn.com/helm/signing.asc \\
  | gpg --batch --yes --dearmor -o /usr/share/keyrings/helm.gpg
echo "deb [arch=$(dpkg --print-architecture) signed-by=/usr/share/keyrings/helm.gpg] https://baltocdn.com/helm/stable/debian/ all main" \\
  > /etc/apt/sources.list.d/helm-stable-debian.list
"""

PULUMI_INSTALL_TEMPLATE = """\
set -e
curl -fsSL https://get.pulumi.com | sh
if ! grep -q "pulumi/bin" ~/.bashrc 2>/dev/null; then
  echo 'export PATH=$PATH:$HOME/.pulumi/bin' >> ~/.bashrc
fi
$HOME/.pulumi/bin/pulumi version
"""

CLUSTER_ISSUER_TEMPLATE = """\
apiVersion: cert-manager.io/v1
kind: ClusterIssuer
metadata:
  name: {{ name }}
spec:
  acme:
    server: https://acme-v02.api.letsencrypt.org/directory
    email: {{ email }}
    privateKeySecretRef:
      name: {{ name }}
    solvers:
    - http01:
        ingress:
          class: nginx
"""

MYSQL_PROVISION_TEMPLATE = """\
CREATE DATABASE IF NOT EXISTS `{{ name }}`;
CREATE USER IF NOT EXISTS {{ user | sql_quote }}@'%' IDENTIFIED BY {{ password | sql_quote }};
CREATE USER IF NOT EXISTS {{ user | sql_quote }}@'localhost' IDENTIFIED BY {{ password | sql_quote }};
GRANT ALL PRIVILEGES ON `{{ name }}`.* TO {{ user | sql_quote }}@'%';
GRANT ALL PRIVILEGES ON `{{ name }}`.* TO {{ user | sql_quote }}@'localhost';
FLUSH PRIVILEGES;
"""

MYSQL_BIND_TEMPLATE = """\
for cnf in /etc/mysql/mysql.conf.d/mysqld.cnf /etc/mysql/mariadb.conf.d/50-server.cnf /etc/mysql/my.cnf; do
  [ -f "$cnf" ] && sed -i 's/^bind-address.*/bind-address = 0.0.0.0/' "$cnf"
done
systemctl restart {{ service | shell_quote }}
"""

POSTGRES_PROVISION_TEMPLATE = """\
set -e
if ! sudo -u postgres psql -tAc "SELECT 1 FROM pg_roles WHERE rolname={{ user | sql_quote }}" | grep -q 1; then
  sudo -u postgres psql -c {{ ('CREATE ROLE "' ~ user ~ '" LOGIN PASSWORD ' ~ (password | sql_quote)) | shell_quote }}
fi
if ! sudo -u postgres psql -tAc "SELECT 1 FROM pg_database WHERE datname={{ name | sql_quote }}" | grep -q 1; then
  sudo -u postgres createdb -O {{ user | shell_quote }} {{ name | shell_quote }}
fi
"""

REDIS_CONFIGURE_TEMPLATE = """\
set -e
CONF=/etc/redis/redis.conf
sed -i 's/^bind .*/bind 0.0.0.0/' "$CONF"
sed -i 's/^protected-mode yes/protected-mode no/' "$CONF"
{% if password %}
sed -i '/^# *requirepass /d; /^requirepass /d' "$CONF"
echo {{ ("requirepass " ~ password) | shell_quote }} >> "$CONF"
{% endif %}
systemctl restart redis-server
systemctl enable redis-server
"""


def ssh_config_block(
    project: str, alias: str, git_host: str, key_path: str
) -> str:
    """Render the ``Host <alias>`` block binding the deploy key."""
    return render(
        SSH_CONFIG_BLOCK_TEMPLATE,
        project=project,
        alias=alias,
        git_host=git_host,
        key_path=key_path,
    )


def cluster_issuer_manifest(email: str, name: str = CLUSTER_ISSUER_NAME) -> str:
    """Render the Let's Encrypt ClusterIssuer manifest."""
    return render(CLUSTER_ISSUER_TEMPLATE, name=name, email=email)
