"""Configuration commands."""

import json


def cmd_config(args, ctx):
    if args.config_action == "show":
        data = ctx.loaded_config.to_dict(redact=True)
        if args.json:
            print(json.dumps(data, indent=2))
            return
        width = max(len(key) for key in data)
        for key, value in data.items():
            print(f"{key:<{width}}  {value}")
