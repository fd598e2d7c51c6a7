"""
Render a bootstrap plan into a self-contained cloud-init user-data script.

The script runs the same state machine as BootstrapRunner, writing the
same status file and completion marker, so `lampstack boot-status` and
operators reading the files see one format regardless of which runner ran.
"""

import math
import shlex
from itertools import islice
from typing import List

from jinja2 import Environment, StrictUndefined

from .constants import EXIT_CODES, USER_DATA_LIMIT
from .exceptions import ValidationError
from .readiness import backoff_delays
from .runner import READY_CHECK_TIMEOUT
from .steps import BootstrapPlan, ReadinessGate

HEREDOC_DELIMITER = "LAMPSTACK_STEP_EOF"

USER_DATA_TEMPLATE = """\
#!/bin/bash
# lampstack bootstrap: {{ plan.name }}
set -u
umask 022

STATUS={{ plan.status | sh }}
MARKER={{ plan.marker | sh }}
LOG={{ plan.log | sh }}
SECRETS_FILE={{ plan.secrets_file | sh }}
STOP=0

mkdir -p "$(dirname "$LOG")" "$(dirname "$STATUS")" "$(dirname "$MARKER")"
exec > >(tee -a "$LOG") 2>&1
trap 'STOP=1' TERM INT

log() { echo "$(date -u '+%Y-%m-%d %H:%M:%S') | $1 | $2"; }

jstr() { if [ -z "$1" ]; then printf 'null'; else printf '"%s"' "$1"; fi; }

write_status() {
  printf '{"state": "%s", "step_index": %s, "step": %s, "reason": %s, "exit_code": %s, "updated_at": "%s"}\\n' \\
    "$1" "${2:-null}" "$(jstr "${3:-}")" "$(jstr "${4:-}")" "${5:-null}" \\
    "$(date -u '+%Y-%m-%dT%H:%M:%S+00:00')" > "$STATUS.tmp" && mv "$STATUS.tmp" "$STATUS"
}

fail() {
  write_status failed "$1" "$2" "$3" "${5:-}"
  log ERROR "Step $1 ($2) failed: $3"
  exit "$4"
}

wait_ready() {
  local index=$1 name=$2 cmd=$3 limit=$4
  shift 4
  local start=$SECONDS attempt=0 delay remaining budget
  for delay in "$@" last; do
    remaining=$((limit - (SECONDS - start)))
    [ "$remaining" -le 0 ] && break
    budget=$((remaining < {{ check_timeout }} ? remaining : {{ check_timeout }}))
    attempt=$((attempt + 1))
    if timeout "$budget" /bin/sh -c "$cmd" >/dev/null 2>&1; then
      return 0
    fi
    [ "$delay" = last ] && break
    remaining=$((limit - (SECONDS - start)))
    [ "$remaining" -le 0 ] && break
    [ "$delay" -gt "$remaining" ] && delay=$remaining
    log INFO "Step $index ($name): not ready after attempt $attempt, retrying in ${delay}s"
    sleep "$delay"
  done
  fail "$index" "$name" "step $index ($name) not ready after $attempt attempt(s) in $((SECONDS - start))s" {{ exit_codes.readiness_timeout }}
}

if [ -f "$STATUS" ]; then
  PREV_STATE=$(sed -n 's/.*"state": "\\([a-z_]*\\)".*/\\1/p' "$STATUS" | head -n 1)
  PREV_INDEX=$(sed -n 's/.*"step_index": \\([0-9]*\\).*/\\1/p' "$STATUS" | head -n 1)
  PREV_STEP=$(sed -n 's/.*"step": "\\([^"]*\\)".*/\\1/p' "$STATUS" | head -n 1)
else
  PREV_STATE=not_started PREV_INDEX= PREV_STEP=
fi

if [ "$PREV_STATE" = completed ]; then
  log INFO "Bootstrap '{{ plan.name }}' already completed; nothing to do"
  exit 0
fi

START=0
if [ "$PREV_STATE" = failed ] || [ "$PREV_STATE" = running ]; then
  case "${PREV_INDEX}:${PREV_STEP}" in
{% for step in plan.steps if step.resumable %}
    {{ (loop_index(step) ~ ":" ~ step.name) | sh }}) START=$PREV_INDEX ;;
{% endfor %}
    *) START=0 ;;
  esac
  log INFO "Previous run stopped at step ${PREV_INDEX:-?}; starting at step $START"
fi

{% if plan.secrets %}
mkdir -p "$(dirname "$SECRETS_FILE")"
touch "$SECRETS_FILE"
chmod 600 "$SECRETS_FILE"
. "$SECRETS_FILE"
{% for name, source in plan.secrets.items() %}
{% if "generate" in source %}
if [ -z "${{ '{' }}{{ name }}:-{{ '}' }}" ]; then
  {{ name }}=$(tr -dc 'A-Za-z0-9' < /dev/urandom | head -c {{ source.generate }})
  echo "{{ name }}=${{ '{' }}{{ name }}{{ '}' }}" >> "$SECRETS_FILE"
fi
{% elif "env" in source %}
if [ -z "${{ '{' }}{{ source.env }}+x{{ '}' }}" ]; then
  fail "$START" "secrets" "environment variable {{ source.env }} is not set" {{ exit_codes.error }}
fi
{{ name }}="${{ '{' }}{{ source.env }}{{ '}' }}"
{% else %}
{{ name }}=$(cat {{ source.file | sh }}) || fail "$START" "secrets" "cannot read {{ source.file }}" {{ exit_codes.error }}
{% endif %}
export {{ name }}
{% endfor %}

{% endif %}
{% for step in plan.steps %}
{% set index = loop.index0 %}
# step {{ index }}: {{ step.name }}
RUN_{{ index }}=$(cat <<'{{ delimiter }}'
{{ step.run }}
{{ delimiter }}
)
{% if step.check %}
CHECK_{{ index }}=$(cat <<'{{ delimiter }}'
{{ step.check }}
{{ delimiter }}
)
{% endif %}
if [ "$START" -le {{ index }} ]; then
  [ "$STOP" -eq 1 ] && fail {{ index }} {{ step.name }} cancelled {{ exit_codes.bootstrap_step }}
  write_status running {{ index }} {{ step.name }}
  log INFO "Step {{ index + 1 }}/{{ plan.steps | length }}: {{ step.name }}"
{% if step.ready %}
  wait_ready {{ index }} {{ step.name }} {{ step.ready.command | sh }} {{ ready[index].timeout }} {{ ready[index].delays | join(" ") }}
{% endif %}
{% if step.check %}
  if timeout {{ timeouts[index] }} /bin/sh -c "$CHECK_{{ index }}" >/dev/null 2>&1; then
    log INFO "Step {{ index }} ({{ step.name }}) already done, skipping"
  else
{% else %}
  if true; then
{% endif %}
    timeout {{ timeouts[index] }} /bin/sh -c "$RUN_{{ index }}"
    rc=$?
    [ "$rc" -eq 124 ] && fail {{ index }} {{ step.name }} "timed out after {{ step.timeout }}s" {{ exit_codes.bootstrap_step }}
    [ "$rc" -ne 0 ] && fail {{ index }} {{ step.name }} "exited with $rc" {{ exit_codes.bootstrap_step }} "$rc"
{% if step.check %}
    timeout {{ timeouts[index] }} /bin/sh -c "$CHECK_{{ index }}" >/dev/null 2>&1 \\
      || fail {{ index }} {{ step.name }} "check still failing after run" {{ exit_codes.bootstrap_step }}
{% endif %}
  fi
fi

{% endfor %}
date -u '+%Y-%m-%dT%H:%M:%S+00:00' > "$MARKER"
write_status completed
log INFO "Bootstrap '{{ plan.name }}' completed"
"""


class _GateSchedule:
    def __init__(self, timeout: int, delays: List[int]):
        self.timeout = timeout
        self.delays = delays


def _seconds(value: float) -> int:
    return max(1, int(math.ceil(value)))


def gate_schedule(gate: ReadinessGate) -> _GateSchedule:
    """Whole-second sleep schedule between the gate's readiness checks."""
    delays = islice(backoff_delays(gate.delay, gate.backoff, gate.max_delay), gate.retries - 1)
    return _GateSchedule(_seconds(gate.timeout), [_seconds(d) for d in delays])


def _environment() -> Environment:
    env = Environment(
        autoescape=False,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
    )
    env.filters["sh"] = lambda value: shlex.quote(str(value))
    return env


def render_user_data(plan: BootstrapPlan) -> str:
    """Render the plan as a bash script for the instance's first boot."""
    problems = []
    for index, step in enumerate(plan.steps):
        for field in ("run", "check"):
            text = getattr(step, field) or ""
            if HEREDOC_DELIMITER in text:
                problems.append(f"step {index} ({step.name}): '{field}' contains {HEREDOC_DELIMITER}")
    if problems:
        raise ValidationError(problems)

    positions = {id(step): index for index, step in enumerate(plan.steps)}
    script = _environment().from_string(USER_DATA_TEMPLATE).render(
        plan=plan,
        delimiter=HEREDOC_DELIMITER,
        exit_codes=EXIT_CODES,
        check_timeout=_seconds(READY_CHECK_TIMEOUT),
        timeouts={i: _seconds(s.timeout) for i, s in enumerate(plan.steps)},
        ready={i: gate_schedule(s.ready) for i, s in enumerate(plan.steps) if s.ready},
        loop_index=lambda step: positions[id(step)],
    )

    size = len(script.encode("utf-8"))
    if size > USER_DATA_LIMIT:
        raise ValidationError(
            [f"bootstrap '{plan.name}' renders {size} bytes of user data, limit is {USER_DATA_LIMIT}"]
        )
    return script
