from bisync_watch.cli import main

raise SystemExit(main())
