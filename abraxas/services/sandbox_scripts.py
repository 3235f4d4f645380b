"""Run-script generation and naming helpers for sandboxes.

The run script is rendered with Jinja2 and executed detached inside the
sandbox. It clones the repository, checks out the working branch, runs
the agent, and reports back through HMAC-signed webhooks
(X-Webhook-Signature: sha256=<hex>). Every interpolated value is passed
through the ``shquote`` filter so that titles, prompts and credentials
cannot break out of their shell words.

Manifest sandboxes also get a task-loop wrapper, started and stopped on
demand, and PRD creator sandboxes get a setup-only script that leaves
the agent for the user to drive.
"""

import hashlib
import hmac
import re
import secrets
import shlex
import string
import time
from dataclasses import dataclass

from jinja2 import Environment, StrictUndefined

from abraxas.errors.domain import ValidationError

SCRIPT_PATH = "/tmp/abraxas-run.sh"
LOG_PATH = "/tmp/abraxas-run.log"
REPO_DIR = "/home/sprite/repo"
AGENT_AUTH_PATH = "/home/sprite/.local/share/opencode/auth.json"
MANIFEST_BRANCH_PREFIX = "manifest-"

_PASSWORD_ALPHABET = string.ascii_letters + string.digits
_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
_KEBAB_CASE_PATTERN = re.compile(r"[a-z][a-z0-9]*(-[a-z0-9]+)*")

DEFAULT_SETUP_SCRIPT = """\
export PATH="$HOME/.local/bin:$HOME/bin:$HOME/.opencode/bin:/usr/local/bin:$PATH"

echo "Checking for opencode..."
if ! command -v opencode > /dev/null 2>&1; then
    echo "Installing opencode..."
    curl -fsSL https://opencode.ai/install | bash
    export PATH="$HOME/.local/bin:$HOME/bin:$HOME/.opencode/bin:$PATH"
fi
opencode --version || true
"""

DEFAULT_LOCAL_SETUP_SCRIPT = """\
echo "Installing Docker..."
curl -fsSL https://get.docker.com | sh
sudo dockerd > /tmp/dockerd.log 2>&1 &
for i in $(seq 1 30); do
    if sudo docker info > /dev/null 2>&1; then
        echo "Docker is ready"
        break
    fi
    sleep 1
done

if [ -f package.json ]; then
    corepack enable || true
    pnpm install
fi

if [ -f docker-compose.yml ] || [ -f docker-compose.yaml ]; then
    sudo docker compose up -d
    sleep 5
fi
"""

RUN_SCRIPT_TEMPLATE = """\
#!/bin/bash
set -uo pipefail

WEBHOOK_URL={{ webhook_url | shquote }}
WEBHOOK_SECRET={{ webhook_secret | shquote }}
BRANCH_NAME={{ branch_name | shquote }}
AGENT_MODEL={{ agent_model | shquote }}
PROMPT={{ prompt | shquote }}
REPO_DIR={{ repo_dir | shquote }}
OUTPUT_FILE=/tmp/abraxas-agent-output.jsonl

json_escape() {
    printf '%s' "$1" | sed -e 's/\\\\/\\\\\\\\/g' -e 's/"/\\\\"/g' -e 's/\\t/ /g' | awk 'NR > 1 { printf "\\\\n" } { printf "%s", $0 }'
}

send_webhook() {
    local payload="$1"
    local signature
    signature="sha256=$(printf '%s' "$payload" | openssl dgst -sha256 -hmac "$WEBHOOK_SECRET" | awk '{print $NF}')"
    local code
    code=$(curl -sS -o /tmp/abraxas-webhook-response.txt -w "%{http_code}" -X POST "$WEBHOOK_URL" \\
        -H "Content-Type: application/json" \\
        -H "X-Webhook-Signature: $signature" \\
        --data-binary "$payload" || echo "000")
    echo "Webhook responded with HTTP $code"
}

fail() {
    echo "ERROR: $1"
    local logs
    logs=$(tail -n 50 "$OUTPUT_FILE" 2>/dev/null || true)
    send_webhook "{\\"type\\":\\"error\\",\\"error\\":\\"$(json_escape "$1")\\",\\"logs\\":\\"$(json_escape "$logs")\\"}"
    exit 1
}

{% if manifest %}
send_webhook '{"type":"started","message":"Manifest sandbox started"}'
{% else %}
send_webhook '{"type":"started","message":"Sandbox execution started"}'
{% endif %}

echo "=== Setup Phase ==="
{{ setup_script }}
echo "=== Setup Complete ==="

git clone {{ clone_url | shquote }} "$REPO_DIR" > /dev/null 2>&1 || fail "Failed to clone repository"
cd "$REPO_DIR" || fail "Repository directory missing after clone"
git config user.email {{ git_user_email | shquote }}
git config user.name {{ git_user_name | shquote }}

if git ls-remote --exit-code --heads origin "$BRANCH_NAME" > /dev/null 2>&1; then
    git fetch origin "$BRANCH_NAME" && git checkout "$BRANCH_NAME" || fail "Failed to check out branch $BRANCH_NAME"
else
    git checkout -b "$BRANCH_NAME" || fail "Failed to create branch $BRANCH_NAME"
fi
{% if local_setup_script %}

echo "=== Project Setup ==="
(
{{ local_setup_script }}
) || fail "Project setup script failed"
{% endif %}
{% if manifest %}

git push -u origin "$BRANCH_NAME" > /dev/null 2>&1 || fail "Failed to push branch $BRANCH_NAME"
send_webhook "{\\"type\\":\\"branch_ready\\",\\"branchName\\":\\"$(json_escape "$BRANCH_NAME")\\"}"
{% endif %}

echo "=== Running agent ($AGENT_MODEL) ==="
opencode run --model "$AGENT_MODEL" --format json "$PROMPT" > "$OUTPUT_FILE" 2>&1
AGENT_EXIT=$?
if [ "$AGENT_EXIT" -ne 0 ]; then
    fail "Agent exited with status $AGENT_EXIT"
fi

if [ -n "$(git status --porcelain)" ]; then
    git add -A
    git commit -m "Abraxas: automated changes" > /dev/null || fail "Failed to commit changes"
fi
git push -u origin "$BRANCH_NAME" > /dev/null 2>&1 || fail "Failed to push branch $BRANCH_NAME"

MESSAGE_COUNT=$(grep -c '"type":"step_finish"' "$OUTPUT_FILE" 2>/dev/null || true)
INPUT_TOKENS=$(grep -o '"input":[0-9]*' "$OUTPUT_FILE" 2>/dev/null | grep -o '[0-9]*' | awk '{s+=$1} END {print s+0}')
OUTPUT_TOKENS=$(grep -o '"output":[0-9]*' "$OUTPUT_FILE" 2>/dev/null | grep -o '[0-9]*' | awk '{s+=$1} END {print s+0}')
PR_URL=$(grep -o 'https://github.com/[^" ]*/pull/[0-9]*' "$OUTPUT_FILE" 2>/dev/null | tail -n 1 || true)
STATS="{\\"messageCount\\":${MESSAGE_COUNT:-0},\\"inputTokens\\":${INPUT_TOKENS:-0},\\"outputTokens\\":${OUTPUT_TOKENS:-0}}"

send_webhook "{\\"type\\":\\"completed\\",\\"summary\\":\\"Agent finished on $(json_escape "$BRANCH_NAME")\\",\\"branchName\\":\\"$(json_escape "$BRANCH_NAME")\\",\\"pullRequestUrl\\":\\"$(json_escape "$PR_URL")\\",\\"stats\\":$STATS}"
"""

TASK_LOOP_SCRIPT_PATH = "/tmp/task-loop-wrapper.sh"
TASK_LOOP_LOG_PATH = "/tmp/task-loop.log"

TASK_LOOP_TEMPLATE = """\
#!/bin/bash
set -uo pipefail

log() { echo "[$(date '+%Y-%m-%d %H:%M:%S')] $*"; }

PRD_NAME={{ prd_name | shquote }}
WEBHOOK_URL={{ webhook_url | shquote }}
WEBHOOK_SECRET={{ webhook_secret | shquote }}
REPO_DIR={{ repo_dir | shquote }}

send_webhook() {
    local payload="$1"
    local signature
    signature="sha256=$(printf '%s' "$payload" | openssl dgst -sha256 -hmac "$WEBHOOK_SECRET" | awk '{print $NF}')"
    curl -s -X POST "$WEBHOOK_URL" \\
        -H "Content-Type: application/json" \\
        -H "X-Webhook-Signature: $signature" \\
        --data-binary "$payload" > /dev/null 2>&1 || true
}

# Sandboxes sleep without outbound traffic.
(
    while true; do
        curl -s https://example.com > /dev/null 2>&1 || true
        sleep 30
    done
) &
KEEPALIVE_PID=$!
trap 'kill $KEEPALIVE_PID 2>/dev/null || true' EXIT

DOCKERD_PID=""
{% if has_local_setup %}
if ! sudo docker info > /dev/null 2>&1 && command -v dockerd > /dev/null 2>&1; then
    log "Starting Docker daemon..."
    sudo dockerd > /dev/null 2>&1 &
    DOCKERD_PID=$!
    for i in $(seq 1 30); do
        sudo docker info > /dev/null 2>&1 && break
        sleep 1
    done
fi
cd "$REPO_DIR"
if [ -f docker-compose.yml ] || [ -f docker-compose.yaml ]; then
    if [ "$(sudo docker compose ps -q 2>/dev/null | wc -l)" -eq 0 ]; then
        log "Starting docker compose services..."
        sudo docker compose up -d
        sleep 5
    fi
fi
{% endif %}

cd "$REPO_DIR"
task-loop "$PRD_NAME" 2>&1 | while IFS= read -r line; do log "$line"; done
TASK_EXIT_CODE=${PIPESTATUS[0]}

if [ "$TASK_EXIT_CODE" -ne 0 ]; then
    send_webhook "{\\"type\\":\\"error\\",\\"error\\":\\"task-loop exited with code $TASK_EXIT_CODE\\"}"
fi

if [ -n "$DOCKERD_PID" ]; then
    log "Stopping Docker..."
    sudo docker compose down > /dev/null 2>&1 || true
    sudo kill "$DOCKERD_PID" 2>/dev/null || true
fi

exit "$TASK_EXIT_CODE"
"""

PRD_CREATOR_TEMPLATE = """\
#!/bin/bash
set -uo pipefail

REPO_DIR={{ repo_dir | shquote }}

echo "=== PRD Creator Setup ==="
{{ setup_script }}

git clone {{ clone_url | shquote }} "$REPO_DIR" > /dev/null 2>&1 || { echo "ERROR: Failed to clone repository"; exit 1; }
cd "$REPO_DIR" || exit 1
git config user.email {{ git_user_email | shquote }}
git config user.name {{ git_user_name | shquote }}
{% if local_setup_script %}

echo "=== Project Setup ==="
(
{{ local_setup_script }}
) || echo "WARNING: project setup script failed"
{% endif %}

echo "=== PRD Creator Ready ==="
echo "Create the PRD, then push it to a {{ branch_prefix }}<prd name> branch."
echo "Destroy this sandbox when done."
"""


def _shquote(value: object) -> str:
    return shlex.quote("" if value is None else str(value))


def get_script_environment() -> Environment:
    """Create the Jinja2 environment used to render run scripts.

    Returns:
        Environment with the ``shquote`` filter registered. Undefined
        variables raise instead of rendering as empty strings.
    """
    env = Environment(
        autoescape=False,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )
    env.filters["shquote"] = _shquote
    return env


@dataclass
class RunScriptConfig:
    """Inputs for rendering a sandbox run script."""

    webhook_url: str
    webhook_secret: str
    prompt: str
    repository_url: str
    access_token: str
    branch_name: str
    agent_model: str
    git_user_name: str
    git_user_email: str
    setup_script: str | None = None
    local_setup_script: str | None = None
    manifest: bool = False


def authenticated_clone_url(repository_url: str, access_token: str) -> str:
    """Embed an access token into an https repository URL.

    Raises:
        ValidationError: If the URL is not an https URL.
    """
    if not repository_url.startswith("https://"):
        raise ValidationError("repository_url", "Repository URL must start with https://")
    return repository_url.replace("https://", f"https://{access_token}@", 1)


def render_run_script(config: RunScriptConfig) -> str:
    """Render the detached run script for a task or manifest sandbox."""
    template = get_script_environment().from_string(RUN_SCRIPT_TEMPLATE)
    return template.render(
        webhook_url=config.webhook_url,
        webhook_secret=config.webhook_secret,
        prompt=config.prompt,
        repo_dir=REPO_DIR,
        clone_url=authenticated_clone_url(config.repository_url, config.access_token),
        branch_name=config.branch_name,
        agent_model=config.agent_model,
        git_user_name=config.git_user_name,
        git_user_email=config.git_user_email,
        setup_script=config.setup_script or DEFAULT_SETUP_SCRIPT,
        local_setup_script=config.local_setup_script,
        manifest=config.manifest,
    )


def render_task_loop_script(
    prd_name: str, webhook_url: str, webhook_secret: str, has_local_setup: bool
) -> str:
    """Render the wrapper that runs task-loop for a PRD in a manifest sandbox."""
    template = get_script_environment().from_string(TASK_LOOP_TEMPLATE)
    return template.render(
        prd_name=prd_name,
        webhook_url=webhook_url,
        webhook_secret=webhook_secret,
        repo_dir=REPO_DIR,
        has_local_setup=has_local_setup,
    )


@dataclass
class PrdCreatorScriptConfig:
    """Inputs for rendering a PRD creator setup script."""

    repository_url: str
    access_token: str
    git_user_name: str
    git_user_email: str
    setup_script: str | None = None
    local_setup_script: str | None = None


def render_prd_creator_script(config: PrdCreatorScriptConfig) -> str:
    """Render the setup script of a sandbox used to write a new PRD by hand."""
    template = get_script_environment().from_string(PRD_CREATOR_TEMPLATE)
    return template.render(
        repo_dir=REPO_DIR,
        clone_url=authenticated_clone_url(config.repository_url, config.access_token),
        git_user_name=config.git_user_name,
        git_user_email=config.git_user_email,
        setup_script=config.setup_script or DEFAULT_SETUP_SCRIPT,
        local_setup_script=config.local_setup_script,
        branch_prefix=MANIFEST_BRANCH_PREFIX,
    )


def generate_webhook_secret() -> str:
    """Return a random 32-byte webhook secret as hex."""
    return secrets.token_hex(32)


def generate_sandbox_password() -> str:
    """Return a random 32-character alphanumeric password."""
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(32))


def sign_payload(payload: bytes, secret: str) -> str:
    """Return the X-Webhook-Signature header value for a payload."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _short_id(identifier: str, length: int) -> str:
    return identifier.replace("-", "")[:length]


def _now_ms() -> int:
    return int(time.time() * 1000)


def slugify(value: str) -> str:
    """Lowercase and collapse runs of non-alphanumerics to single dashes."""
    return _SLUG_PATTERN.sub("-", value.lower()).strip("-")


def task_sandbox_name(task_id: str) -> str:
    """Sandbox names are alphanumeric with dashes and at most 63 chars."""
    return f"abraxas-{_short_id(task_id, 12)}-{_now_ms()}"


def manifest_sandbox_name(project_id: str) -> str:
    return f"manifest-{_short_id(project_id, 8)}-{_now_ms()}"


def task_branch_name(task_id: str, title: str) -> str:
    """Branch for a task that has none yet: abraxas/<id8>-<slug30>."""
    slug = slugify(title)[:30].strip("-")
    short_id = _short_id(task_id, 8)
    return f"abraxas/{short_id}-{slug}" if slug else f"abraxas/{short_id}"


def manifest_branch_name(name: str) -> str:
    return f"{MANIFEST_BRANCH_PREFIX}{slugify(name) or 'run'}"


def prd_creator_branch_name() -> str:
    """Placeholder branch for a PRD creator sandbox, which works on the default branch."""
    return f"{MANIFEST_BRANCH_PREFIX}creator-{_now_ms()}"


def validate_prd_name(prd_name: str) -> str:
    """Return the PRD name if it is kebab-case.

    Raises:
        ValidationError: For anything else, e.g. "My PRD" or "-x".
    """
    if not _KEBAB_CASE_PATTERN.fullmatch(prd_name or ""):
        raise ValidationError("prd_name", "PRD name must be kebab-case (e.g., my-feature)")
    return prd_name
