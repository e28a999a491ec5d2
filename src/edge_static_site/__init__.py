import argparse
import logging

from .config import EdgeConfig
from .edge_hook import rewrite_path
from .template import create_template


def get_args(argv=None):
    parser = argparse.ArgumentParser(prog="edge-static-site")
    parser.add_argument("--verbose", "-v", action="store_true", default=False)
    subparsers = parser.add_subparsers(dest="command")

    template_parser = subparsers.add_parser(
        "template", help="Print the CloudFormation template as JSON"
    )
    template_parser.add_argument("--minify", action="store_true", default=False)

    rewrite_parser = subparsers.add_parser(
        "rewrite", help="Show the object key an edge request path is rewritten to"
    )
    rewrite_parser.add_argument("paths", nargs="+", metavar="PATH")

    parser.set_defaults(command="template", minify=False)
    return parser.parse_args(argv)


def main(argv=None):
    args = get_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    if args.command == "rewrite":
        for path in args.paths:
            print(f"{path} -> {rewrite_path(path)}")
        return
    json_kwargs = {"sort_keys": True}
    if args.minify:
        json_kwargs.update({"indent": None, "separators": (",", ":")})
    print(create_template(EdgeConfig.from_environ()).to_json(**json_kwargs))
