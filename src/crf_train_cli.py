#!/usr/bin/env python3
"""
crf_train_cli.py - Command-line tool for training name-labeling CRF models

================================================================================
USAGE
================================================================================

    # Person model
    crfname-train name_data/person_labeled.xml -o person.crfsuite

    # Company model with stronger regularization
    crfname-train -t company company_labeled.xml -o company.crfsuite --c2 2.0

    # Generic model: union of person and company corpora
    crfname-train -t generic -p person.xml -c company.xml -o generic.crfsuite

Exit status is 0 on success and 1 on any validation or training failure
(argparse usage errors exit with 2).

================================================================================
"""

import argparse
import sys
import os
import logging

# Add src directory to path if needed
src_dir = os.path.dirname(os.path.abspath(__file__))
if src_dir not in sys.path:
    sys.path.insert(0, src_dir)

import crf_core
import util
from name_errors import CorpusFormatError

MODEL_TYPES = ('person', 'company', 'generic')


def setup_logging(verbose=False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)-8s %(message)s',
        datefmt='%H:%M:%S'
    )


def progress_callback(message):
    """Print progress messages to stdout."""
    print(message, flush=True)


def error(message):
    print(f"Error: {message}", file=sys.stderr)
    return 1


def _print_training_result(result):
    """Print training results and return exit code."""
    print()
    if not result.success:
        return error(result.error_message)

    print("-" * 60)
    print("Training Results:")
    print(f"  Model path:     {result.model_path}")
    print(f"  Model size:     {result.model_size:,} bytes")
    print(f"  Sequences:      {result.sequence_count:,}")
    print(f"  Tokens:         {result.token_count:,}")
    print(f"  Attributes:     {result.attribute_count:,}")
    print(f"  Labels:         {result.label_count}")
    print(f"  Training time:  {result.training_time:.2f}s")
    if result.last_iteration:
        print(f"  Iterations:     {result.last_iteration}")
    if result.loss:
        print(f"  Final loss:     {result.loss}")
    print()
    print("Training completed successfully!")
    print(f"Model saved to: {result.model_path}")
    return 0


def build_parser(defaults):
    training = defaults['training']
    parser = argparse.ArgumentParser(
        prog='crfname-train',
        description="Train a CRF model for name parsing.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  crfname-train name_data/person_labeled.xml -o person.crfsuite
  crfname-train -t generic -p person.xml -c company.xml -o generic.crfsuite
"""
    )
    parser.add_argument('input', nargs='?', help='Training corpus file (not used for --type generic)')
    parser.add_argument('-o', '--output', required=True, help='Output model file (required)')
    parser.add_argument('-t', '--type', default='person', choices=MODEL_TYPES,
                        help='Model type: person, company, or generic (default: person)')
    parser.add_argument('-p', '--person', help='Person training data (for generic model)')
    parser.add_argument('-c', '--company', help='Company training data (for generic model)')
    parser.add_argument('--c2', type=float, default=training['c2'],
                        help=f"L2 regularization coefficient (default: {training['c2']})")
    parser.add_argument('--max-iter', type=int, default=training['max_iterations'],
                        help=f"Maximum iterations (default: {training['max_iterations']})")
    parser.add_argument('--epsilon', type=float, default=training['epsilon'],
                        help=f"Convergence threshold (default: {training['epsilon']})")
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    return parser


def _validate_paths(*paths):
    for path in paths:
        if not os.path.exists(path):
            return f"Training file not found: {path}"
    return None


def cmd_train(args, feature_groups, trainer=None):
    """Validate arguments, train, and return the exit code."""
    config = crf_core.TrainingConfig(c2=args.c2, max_iterations=args.max_iter, epsilon=args.epsilon)

    if config.c2 < 0:
        return error("--c2 must not be negative")
    if config.max_iterations <= 0:
        return error("--max-iter must be positive")
    if config.epsilon <= 0:
        return error("--epsilon must be positive")

    if args.type == 'generic':
        if not args.person or not args.company:
            return error("Generic model requires both -p and -c options")
        problem = _validate_paths(args.person, args.company)
        if problem:
            return error(problem)

        print("Training GENERIC model...")
        print(f"  Person data: {args.person}")
        print(f"  Company data: {args.company}")
        print(f"  Output: {args.output}")
        print()

        try:
            person, _ = crf_core.load_corpus(args.person)
            company, _ = crf_core.load_corpus(args.company)
        except CorpusFormatError as e:
            return error(f"Failed to parse training file: {e}")
        except UnicodeDecodeError as e:
            return error(f"Training file is not valid UTF-8: {e}")
        except OSError as e:
            return error(f"Failed to read training file: {e}")

        if args.verbose:
            print(crf_core.format_training_summary(person + company))
            print()

        result = crf_core.train_generic_model(person, company, args.output, config, trainer,
                                              progress_callback, feature_groups)
    else:
        if not args.input:
            return error("Input file is required")
        problem = _validate_paths(args.input)
        if problem:
            return error(problem)

        print(f"Training {args.type} model...")
        print(f"  Input: {args.input}")
        print(f"  Output: {args.output}")
        print()

        try:
            corpus, _ = crf_core.load_corpus(args.input)
        except CorpusFormatError as e:
            return error(f"Failed to parse training file: {e}")
        except UnicodeDecodeError as e:
            return error(f"Training file is not valid UTF-8: {e}")
        except OSError as e:
            return error(f"Failed to read training file: {e}")

        if args.verbose:
            print(crf_core.format_training_summary(corpus))
            print()

        result = crf_core.train_model(corpus, args.output, config, trainer, progress_callback, feature_groups)

    return _print_training_result(result)


def main(argv=None, trainer=None):
    """Main entry point for CLI."""
    config_data, _ = util.get_config_data()
    parser = build_parser(config_data)
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    return cmd_train(args, config_data['feature_groups'], trainer)


if __name__ == "__main__":
    sys.exit(main())
