"""Redis Lua scripts for GCRA rate limiting.

The script runs atomically inside Redis, so concurrent callers on any
number of instances can never both read the same under-capacity state.
"""

# Adapted from the redis-gcra project:
# Copyright (c) 2017 Pavel Pravosud
# https://github.com/rwz/redis-gcra/blob/master/vendor/perform_gcra_ratelimit.lua
#
# KEYS[1]: effective limiter key
# ARGV[1]: emission_interval, ARGV[2]: burst_offset
# ARGV[3]: tat_increment, ARGV[4]: cost
#
# Returns {limited (0/1), remaining, retry_after, reset_after}. The two
# durations are strings because Redis truncates Lua numbers to integers;
# retry_after is -1 when the request is allowed.
ALLOW_N_SCRIPT = """
    -- this script has side-effects, so it requires replicate commands mode.
    -- Redis 7 always replicates effects; some embedded servers omit the call.
    if redis.replicate_commands then
        redis.replicate_commands()
    end

    local rate_limit_key = KEYS[1]
    local emission_interval = tonumber(ARGV[1])
    local burst_offset = tonumber(ARGV[2])
    local tat_increment = tonumber(ARGV[3])
    local cost = tonumber(ARGV[4])

    -- TIME returns seconds and microseconds. Shift the epoch to
    -- Jan 1, 2017 00:00:00 GMT so the combined float stays below 16
    -- significant digits until Sep 2048.
    local redis_now = redis.call('TIME')
    local jan_1_2017 = 1483228800
    local now = (redis_now[1] - jan_1_2017) + (redis_now[2] / 1000000)

    local tat = redis.call('GET', rate_limit_key)
    if not tat then
        tat = now
    else
        tat = tonumber(tat)
    end

    local new_tat = math.max(tat, now) + tat_increment
    local allow_at = new_tat - burst_offset

    local limited
    local remaining
    local retry_after
    local reset_after

    if allow_at > now then
        limited = 1
        remaining = math.floor((now - tat + burst_offset) / emission_interval)
        retry_after = allow_at - now
        reset_after = tat - now
    else
        limited = 0
        remaining = math.floor((now - allow_at) / emission_interval)
        retry_after = -1
        reset_after = new_tat - now
        redis.call('SET', rate_limit_key, string.format('%.17g', new_tat), 'EX', math.ceil(reset_after))
    end

    return {limited, remaining, string.format('%.17g', retry_after), string.format('%.17g', reset_after)}
"""
