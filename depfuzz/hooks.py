"""
Bash runtime hooks installed ahead of the rewritten target.

The rewrite pass only inserts calls; the functions below do the work inside
the instrumented shell. They rely on builtins alone, since the command search
path is empty while the target runs.

Hook configuration arrives through the environment (see the *_ENV names).
"""

from __future__ import annotations

import shlex

REPORT_FD_ENV = "DEPFUZZ_REPORT_FD"
COIN_FD_ENV = "DEPFUZZ_COIN_FD"
REPEAT_FD_ENV = "DEPFUZZ_REPEAT_FD"
PYTHON_ENV = "DEPFUZZ_PYTHON"
CONSTRUCTS_ENV = "DEPFUZZ_CONSTRUCTS"
WORKDIR_ENV = "DEPFUZZ_WORKDIR"

NOISE_TEXT = "this will have to be noisy enough for now; maybe more randomness later"

# Exit status of a shell that lost its report channel.
CHANNEL_LOST_STATUS = 3

HOOK_FUNCTIONS = (
    "__faff_noise",
    "__faff_draw",
    "__faff_coin",
    "__faff_guard",
    "__faff_release",
    "__faff_record",
    "__faff_eval",
    "__faff_include",
    "__faff_case_end",
    "command_not_found_handle",
)

HOOKS = r"""
declare -gA __faff_origins=()
declare -ga __faff_next=()
declare -gr __faff_noise_text=%(noise)s

__faff_noise() {
    (( $1 & 1 )) && printf '%%s\n' "$__faff_noise_text"
    (( $1 & 2 )) && printf '%%s\n' "$__faff_noise_text" >&2
    return 0
}

# Read one decision from fd $1 into the variable named $2 (0 at end of stream).
__faff_draw() {
    local __faff_value=0 __faff_mask=0
    read -r -u "$1" __faff_value __faff_mask || __faff_value=0
    __faff_noise "${__faff_mask:-0}"
    printf -v "$2" '%%d' "${__faff_value:-0}"
}

__faff_coin() {
    local __faff_heads
    __faff_draw "$%(coin_fd)s" __faff_heads
    (( __faff_heads ))
}

__faff_guard() {
    local __faff_counter="__faff_loop_$1"
    if [[ -z ${!__faff_counter+set} ]]; then
        __faff_draw "$%(repeat_fd)s" "$__faff_counter"
    fi
    (( ${!__faff_counter} > 0 )) || return 1
    printf -v "$__faff_counter" '%%d' $(( ${!__faff_counter} - 1 ))
}

__faff_release() {
    unset "__faff_loop_$1"
    return 0
}

# __faff_record PATH LINE KIND TOKEN...
__faff_record() {
    local IFS=$'\x1f' __faff_entry
    __faff_entry="$*"
    __faff_entry=${__faff_entry//$'\n'/ }
    if ! printf '%%s\n' "$__faff_entry" >&"$%(report_fd)s"; then
        printf 'depfuzz: report channel unavailable\n' >&2
        # command_not_found_handle runs in a child; take the target down too.
        [[ $BASHPID == "$$" ]] || kill -TERM "$$"
        exit %(lost)d
    fi
}

__faff_eval() {
    local __faff_eval_path=$1 __faff_eval_line=$2
    eval "$3"
}

__faff_include() {
    local __faff_from=$1 __faff_at=$2 __faff_copy
    shift 2
    __faff_next=("$@")
    [[ $# -gt 0 && -n $1 ]] || return 0
    if [[ ! -r $1 ]]; then
        __faff_record "$__faff_from" "$__faff_at" sourcing "$@"
        __faff_next=(/dev/null)
        return 0
    fi
    if __faff_copy=$("$%(python)s" -m depfuzz.rewrite --constructs "$%(constructs)s" --workdir "$%(workdir)s" -- "$1"); then
        __faff_origins[$__faff_copy]=$1
        __faff_next[0]=$__faff_copy
    fi
    return 0
}

__faff_case_end() {
    (( $# )) && printf '%%s\n' "$@"
    return 0
}

command_not_found_handle() {
    local __faff_path __faff_at
    if [[ ${FUNCNAME[1]:-} == __faff_eval ]]; then
        __faff_path=$__faff_eval_path
        __faff_at=$__faff_eval_line
    else
        __faff_path=${BASH_SOURCE[1]:-main}
        __faff_path=${__faff_origins[$__faff_path]:-$__faff_path}
        __faff_at=${BASH_LINENO[0]}
    fi
    __faff_record "$__faff_path" "$__faff_at" "" "$@"
    __faff_coin
}

readonly -f %(functions)s
""" % {
    "noise": shlex.quote(NOISE_TEXT),
    "coin_fd": COIN_FD_ENV,
    "repeat_fd": REPEAT_FD_ENV,
    "report_fd": REPORT_FD_ENV,
    "python": PYTHON_ENV,
    "constructs": CONSTRUCTS_ENV,
    "workdir": WORKDIR_ENV,
    "lost": CHANNEL_LOST_STATUS,
    "functions": " ".join(HOOK_FUNCTIONS),
}


def build_runner(rewritten: str, original: str, search_path: str) -> str:
    """
    Return the bash program that installs the hooks and sources the target.

    Args:
        rewritten: Path of the rewritten copy of the target.
        original: Path of the target as the user gave it; reported as origin
            and exposed as $0.
        search_path: Empty directory that becomes the only PATH entry.
    """
    q = shlex.quote
    return "\n".join(
        [
            HOOKS.strip(),
            f"__faff_origins[{q(rewritten)}]={q(original)}",
            f"BASH_ARGV0={q(original)}",
            f"declare -xr PATH={q(search_path)}",
            "hash -r",
            f'builtin source {q(rewritten)} "$@"',
            "",
        ]
    )
