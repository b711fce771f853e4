import argparse
import json
import logging
from pathlib import Path

import torch

import config as base_config
import model_zoo
import serializer
import utilities
import visualize
from dataset import ExistingMiniBatchDataset, load_label_names, make_loader
from evaluation import evaluate
from monitor import FileStatsStorage, InMemoryStatsStorage, StatsListener, UIServer
from transfer import TransferLearningHelper, build_transfer_graph

DEVICE = base_config.DEVICE
if DEVICE == "cuda":
    torch.backends.cudnn.benchmark = True


def run_experiment(config: dict) -> str:
    """
    Fine-tunes the new head of a pretrained network on featurized minibatches,
    evaluating after every epoch. Returns the path of the saved model.
    """
    run_id = config["run_id"]
    model_path = Path(config["model_path"])
    model_path.parent.mkdir(parents=True, exist_ok=True)

    # Save configuration for reproducibility
    with open(model_path.parent / "config.json", "w") as f:
        json.dump(config, f, indent=4)

    logging.info(f"--- Starting Experiment: {run_id} ---")
    logging.info(f"Using device: {DEVICE}")
    utilities.seed_everything(config["seed"])

    # --- Step I: architecture ---
    # The frozen part has to match what preprocess.py used to featurize the data.
    base_graph = model_zoo.load_pretrained(config["model_name"], weights=config["weights"])
    logging.info("\n" + base_graph.summary())

    transfer_graph = build_transfer_graph(base_graph, config)
    del base_graph
    transfer_graph.to(DEVICE)
    logging.info("\n" + transfer_graph.summary())

    # --- Step II: presaved minibatches ---
    train_data = ExistingMiniBatchDataset(
        config["train_folder"], config["train_pattern"], shuffle_rows=config["shuffle"]
    )
    test_data = ExistingMiniBatchDataset(config["test_folder"], config["test_pattern"])
    train_loader = make_loader(train_data, config["num_workers"], shuffle=config["shuffle"])
    test_loader = make_loader(test_data, config["num_workers"])
    logging.info(f"Train batches: {len(train_data)}, Test batches: {len(test_data)}")

    # --- Step III: fit on featurized data ---
    helper = TransferLearningHelper(transfer_graph, device=DEVICE)
    unfrozen = helper.unfrozen_graph()
    num_classes = config["num_classes"]
    label_names = load_label_names(config["train_folder"])

    eval_result = evaluate(unfrozen.output, test_loader, num_classes, device=DEVICE, label_names=label_names)
    logging.info(eval_result.stats())

    # --- UI ---
    if config.get("stats_file"):
        storage = FileStatsStorage(config["stats_file"])
    else:
        storage = InMemoryStatsStorage()
    listener = StatsListener(storage, config["listener_frequency"])
    transfer_graph.set_listeners(listener)
    ui_server = None
    if config["ui_enabled"]:
        ui_server = UIServer.get_instance(port=config["ui_port"])
        ui_server.attach(storage, session_id=listener.session_id)
        ui_server.start()

    for epoch in range(config["num_epochs"]):
        avg_score = helper.fit_featurized(train_loader)
        logging.info(f"*** Completed epoch {epoch} *** (avg score: {avg_score:.6f})")
        logging.info("Evaluate model....")
        eval_result = evaluate(unfrozen.output, test_loader, num_classes, device=DEVICE, label_names=label_names)
        logging.info(eval_result.stats())

    if ui_server is not None:
        ui_server.flush()

    if config.get("report_dir"):
        report_dir = Path(config["report_dir"])
        visualize.plot_training_curves(storage.records(listener.session_id), report_dir / "training_curves.png")
        visualize.plot_confusion_matrix(eval_result, report_dir / "confusion_matrix.png")

    # Updater state is only needed to resume training later
    serializer.write_model(
        transfer_graph, model_path, save_updater=config["save_updater"], optimizer=helper.optimizer
    )
    logging.info(f"--- Experiment {run_id} Complete ---")
    return str(model_path)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fine-tune a pretrained VGG head on featurized flower data.")
    parser.add_argument("--epochs", type=int, default=None, help="Number of training epochs.")
    parser.add_argument("--run-id", default=None, help="Name used for the saved config file.")
    parser.add_argument("--model-path", default=None, help="Where to write the trained model zip.")
    parser.add_argument("--num-workers", type=int, default=None, help="Loader workers (-1 = auto).")
    parser.add_argument("--save-updater", action="store_true", help="Keep optimizer state in the zip.")
    parser.add_argument("--no-ui", action="store_true", help="Do not start the training UI.")
    return parser.parse_args(argv)


def main(argv=None):
    """
    Main function to run a single training with default parameters and
    optional command-line overrides.
    """
    utilities.configure_logging()
    args = parse_args(argv)
    config = base_config.get_default_config()
    if args.epochs is not None:
        config["num_epochs"] = args.epochs
    if args.run_id:
        config["run_id"] = args.run_id
    if args.model_path:
        config["model_path"] = args.model_path
    if args.num_workers is not None:
        config["num_workers"] = args.num_workers
    if args.save_updater:
        config["save_updater"] = True
    if args.no_ui:
        config["ui_enabled"] = False
    run_experiment(config)


if __name__ == "__main__":
    main()
