import argparse
import logging

import numpy as np

from devmatrix import DeviceUnavailable
from devmatrix.training import train_mlp_regression


def main() -> None:
    parser = argparse.ArgumentParser(description="devmatrix demo: MLP regression on device matrices")
    parser.add_argument("--backend", choices=["auto", "vulkan", "numpy"], default="auto")
    parser.add_argument("--epochs", type=int, default=50)
    parser.add_argument("--batch-size", type=int, default=32)
    parser.add_argument("--lr", type=float, default=0.1)
    parser.add_argument("--hidden", type=int, default=16)
    parser.add_argument("--log-every", type=int, default=10)
    parser.add_argument("--save", type=str, default="", help="Save trained weights to a pickle file")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    # Generate synthetic data: y = 2x^2 + 1 (nonlinear)
    x = np.linspace(-1, 1, 200, dtype="float32").reshape(-1, 1)
    y = 2 * (x ** 2) + 1

    try:
        train_mlp_regression(
            x,
            y,
            epochs=args.epochs,
            batch_size=args.batch_size,
            lr=args.lr,
            hidden=args.hidden,
            log_every=args.log_every,
            save_path=(args.save or None),
            backend=args.backend,
        )
    except DeviceUnavailable as e:
        print("Vulkan GPU mode failed:")
        print(f"  {e}")
        print(
            "Tip: ensure Vulkan is installed and working, the Python 'vulkan' package is available, "
            "and 'glslc' (shader compiler) is installed on the system."
        )
        raise SystemExit(1) from e

    print("Training done.")


if __name__ == "__main__":
    main()
